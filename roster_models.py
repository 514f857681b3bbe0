from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict

# ================= Formats =================
TIME_FORMAT = "%Y-%m-%d %H:%M" # Minute resolution, as written to the output file
OFFLINE_STATUS = "Offline" # Discord omits the presence text for offline members
CSV_FIELDNAMES = ["username", "status", "type", "status_time"]


# ===============================================
# ||               ERROR CLASSES               ||
# ===============================================
class ScraperError(Exception):
    """Base class for every fatal error raised while scraping.

    All subclasses abort the current attempt. The session controller decides
    whether a fresh attempt is started.

    Args:
        step: Short name of the step that failed (e.g. "fill email field").
        reason: Human-readable description of the underlying failure.
    """

    def __init__(self, step: str, reason: str = "") -> None:
        self.step = step
        self.reason = reason
        message = f"{step} failed: {reason}" if reason else f"{step} failed"
        super().__init__(message)


class SessionStartFailure(ScraperError):
    """Raised when no WebDriver session could be created."""


class NavigationFailure(ScraperError):
    """Raised when a page or server could not be reached."""


class InteractionFailure(ScraperError):
    """Raised when a login form element could not be found, filled or clicked."""


class ScrapeFailure(ScraperError):
    """Raised when the member list could not be enumerated or scrolled.

    The snapshot collected so far is discarded along with the attempt.
    """


class OutputFailure(ScraperError):
    """Raised when a finished snapshot could not be written. Never retried."""


class ScrapeCancelled(ScraperError):
    """Raised when the operator interrupted the run."""


# ===============================================
# ||                DATA MODEL                 ||
# ===============================================
class AccountKind(str, Enum):
    USER = "user"
    BOT = "bot"


@dataclass(frozen=True)
class MemberRecord:
    """One member as seen in the member list at a given moment.

    ``observed_at`` is the time of extraction. Discord does not expose when a
    member actually changed status.
    """
    identity: str
    presence: str
    kind: AccountKind
    observed_at: datetime

    def to_row(self) -> Dict[str, str]:
        return {
            'username': self.identity,
            'status': self.presence,
            'type': self.kind.value,
            'status_time': self.observed_at.strftime(TIME_FORMAT),
        }

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "MemberRecord":
        return cls(
            identity=row['username'],
            presence=row['status'],
            kind=AccountKind(row['type']),
            observed_at=datetime.strptime(row['status_time'], TIME_FORMAT),
        )


# Identity -> latest record seen during one collection run
RosterSnapshot = Dict[str, MemberRecord]
