import os
import signal
import logging
import argparse
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from selenium import webdriver
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.firefox.options import Options as FirefoxOptions
from selenium.webdriver.common.by import By
from selenium.webdriver.remote.client_config import ClientConfig
from selenium.common.exceptions import NoSuchElementException, WebDriverException
from urllib3.exceptions import HTTPError

from webdriver_manager.chrome import ChromeDriverManager
from dotenv import load_dotenv

from roster_models import (
    OFFLINE_STATUS,
    AccountKind,
    InteractionFailure,
    MemberRecord,
    NavigationFailure,
    OutputFailure,
    RosterSnapshot,
    ScrapeCancelled,
    ScrapeFailure,
    ScraperError,
    SessionStartFailure,
)
from roster_storage import CSVManager, MongoDBManager

# ================= Configuration =================
DISCORD_LOGIN_PAGE = "https://discord.com/login"
DEFAULT_SELENIUM_PORT = 4444
BROWSERS = ("firefox", "chrome", "chrome-local") # chrome-local runs a local driver via webdriver-manager

# Scraping behavior
SCROLL_STEP = 700 # Pixels the member list is scrolled per iteration
SCROLL_SCRIPT = "arguments[0].scrollTop += arguments[1];"
LABEL_SEPARATOR = ","

# urllib3 errors (command timeouts, lost driver connection) are not WebDriverExceptions
BROWSER_ERRORS = (WebDriverException, HTTPError)

LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(funcName)s] - %(message)s'

logger = logging.getLogger(__name__)


def _error_message(error: Exception) -> str:
    """Selenium exceptions carry the useful part in ``msg``; str() adds a stacktrace."""
    message = getattr(error, 'msg', None) or str(error)
    return message.strip().splitlines()[0] if message.strip() else type(error).__name__


def _css_string(value: str) -> str:
    return value.replace('\\', '\\\\').replace('"', '\\"')


# ===============================================
# ||               CONFIGURATION               ||
# ===============================================
@dataclass(frozen=True)
class Selectors:
    """CSS selectors for the Discord web client. These break whenever Discord ships a new UI."""
    email_field: str = 'input[name="email"]'
    password_field: str = 'input[name="password"]'
    submit_button: str = 'button[type="submit"]'
    server_by_name: str = 'div[aria-label*="{name}"]'
    server_by_id: str = 'div[data-list-item-id="guildsnav___{id}"]'
    members_toggle: str = 'div[aria-label="Show Member List"]'
    member_list: str = 'aside[class*="membersWrap"] div[class*="scrollerBase"]'
    member_entry: str = 'div[class*="member"] > div[class*="layout"]'
    member_avatar: str = 'div[class*="avatar"] > div[class*="wrapper"]'
    bot_tag: str = 'div[class*="content"] > div[class*="nameAndDecorators"] > span[class*="botTag"]'


@dataclass(frozen=True)
class RestartPolicy:
    """How many whole-session attempts are made and how long to wait between them.

    ``max_attempts=None`` retries forever and leaves termination to whoever
    supervises the process.
    """
    max_attempts: Optional[int] = 3
    backoff: float = 30.0
    backoff_factor: float = 2.0
    max_backoff: float = 600.0

    def __post_init__(self):
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1 (or None for unbounded)")
        if self.backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff must not be negative")

    def allows(self, attempt: int) -> bool:
        """Whether another attempt may follow the failed ``attempt`` (1-based)."""
        return self.max_attempts is None or attempt < self.max_attempts

    def delay(self, attempt: int) -> float:
        delay = self.backoff
        for _ in range(attempt - 1):
            if delay >= self.max_backoff:
                break
            delay *= self.backoff_factor
        return min(delay, self.max_backoff)


@dataclass(frozen=True)
class ScraperConfig:
    """Everything a scraping run needs, resolved once at startup.

    Durations are in seconds except ``scrape_interval`` which is in minutes.
    Exactly one of ``server_name`` and ``server_id`` must be set.
    """
    email: str
    password: str
    server_id: str = ""
    server_name: str = ""
    own_username: str = ""
    selenium_url: str = f"http://localhost:{DEFAULT_SELENIUM_PORT}/wd/hub"
    browser: str = "firefox"
    headless: bool = False
    command_timeout: float = 60.0
    load_time: float = 10.0
    server_load_time: float = 2.0
    two_factor_wait: float = 0.0
    max_iterations: int = 150
    scroll_delay: float = 0.3
    scrape_interval: float = 0.0
    login_url: str = DISCORD_LOGIN_PAGE
    restart: RestartPolicy = field(default_factory=RestartPolicy)
    selectors: Selectors = field(default_factory=Selectors)

    def __post_init__(self):
        if not self.email or not self.password:
            raise ValueError("Discord email and password are required")
        if not self.server_id and not self.server_name:
            raise ValueError("either a server name or a server id is required")
        if self.server_id and self.server_name:
            raise ValueError("server name and server id are mutually exclusive")
        if self.browser not in BROWSERS:
            raise ValueError(f"unsupported browser '{self.browser}', expected one of {', '.join(BROWSERS)}")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be a positive integer")
        for name in ('command_timeout', 'load_time', 'server_load_time', 'two_factor_wait',
                     'scroll_delay', 'scrape_interval'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    @property
    def server_label(self) -> str:
        return self.server_name or self.server_id


# ===============================================
# ||             BROWSER SESSION               ||
# ===============================================
def create_driver(config: ScraperConfig):
    """
    Creates the WebDriver for the configured browser.
    Remote browsers talk to a Selenium server; chrome-local installs and starts chromedriver.
    """
    if config.browser == "chrome-local":
        options = ChromeOptions()
        options.add_argument("--disable-blink-features=AutomationControlled")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        if config.headless:
            options.add_argument("--headless=new")
            options.add_argument("--window-size=1920,1080")
        service = Service(ChromeDriverManager().install())
        driver = webdriver.Chrome(service=service, options=options)
    else:
        if config.browser == "firefox":
            options = FirefoxOptions()
            if config.headless:
                options.add_argument("-headless")
        else:
            options = ChromeOptions()
            if config.headless:
                options.add_argument("--headless=new")
                options.add_argument("--window-size=1920,1080")
        client_config = ClientConfig(remote_server_addr=config.selenium_url, timeout=config.command_timeout)
        driver = webdriver.Remote(command_executor=config.selenium_url, options=options,
                                  client_config=client_config)

    driver.set_page_load_timeout(config.command_timeout)
    driver.set_script_timeout(config.command_timeout)
    return driver


class BrowserSession:
    """The handful of WebDriver operations the scraper relies on.

    Element lookups use CSS selectors, optionally scoped to a parent element.
    Selenium exceptions are passed through unchanged; callers map them to
    scraper errors with the step that failed.
    """
    def __init__(self, driver):
        self.driver = driver
        self._closed = False
        self._close_lock = threading.Lock()

    @classmethod
    def open(cls, config: ScraperConfig) -> "BrowserSession":
        logger.info(f"Starting {config.browser} session...")
        try:
            driver = create_driver(config)
        except Exception as e:
            logger.error(f"Failed to initialize driver: {e}")
            raise SessionStartFailure("start browser session", _error_message(e)) from e
        logger.info("Browser session started successfully.")
        return cls(driver)

    def navigate(self, url: str):
        self.driver.get(url)

    def find_one(self, selector: str, parent=None):
        scope = self.driver if parent is None else parent
        return scope.find_element(By.CSS_SELECTOR, selector)

    def find_all(self, selector: str, parent=None) -> List:
        scope = self.driver if parent is None else parent
        return scope.find_elements(By.CSS_SELECTOR, selector)

    def get_attribute(self, element, name: str) -> Optional[str]:
        return element.get_attribute(name)

    def click(self, element):
        element.click()

    def send_keys(self, element, text: str):
        element.send_keys(text)

    def run_script(self, script: str, *args):
        return self.driver.execute_script(script, *args)

    def close(self):
        """Quits the browser. Safe to call more than once and from another thread."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self.driver.quit()
        logger.info("Browser session closed.")


# ===============================================
# ||             ROSTER COLLECTOR              ||
# ===============================================
def parse_member_label(label: str) -> Tuple[str, str]:
    """
    Splits an avatar aria-label into (username, status).

    Online members read "name, Online" or "name, Do Not Disturb"; the first
    comma separates the name from the status text, which is kept verbatim.
    Offline members have no status text at all.
    """
    identity, separator, presence = label.partition(LABEL_SEPARATOR)
    if not separator:
        return label, OFFLINE_STATUS
    if presence.startswith(" "):
        presence = presence[1:]
    return identity, presence or OFFLINE_STATUS


class RosterCollector:
    """
    Collects the member list of the currently opened server.

    Discord renders the member list lazily, so the list is sampled, scrolled and
    sampled again for a fixed number of iterations. Members seen more than once
    keep their latest observation.
    """
    def __init__(self, session, config: ScraperConfig, stop_event: Optional[threading.Event] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.session = session
        self.config = config
        self.selectors = config.selectors
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

    def collect(self) -> RosterSnapshot:
        logger.info("Scrapping user data in progress...")
        snapshot: RosterSnapshot = {}

        for iteration in range(self.config.max_iterations):
            if self.stop_event.is_set():
                raise ScrapeCancelled("collect members", "interrupted by operator")

            try:
                entries = self.session.find_all(self.selectors.member_entry)
            except BROWSER_ERRORS as e:
                raise ScrapeFailure("find member entries", _error_message(e)) from e

            parsed = 0
            for entry in entries:
                record = self._extract_member(entry)
                if record is not None:
                    snapshot[record.identity] = record
                    parsed += 1
            logger.debug(f"Iteration {iteration + 1}/{self.config.max_iterations}: "
                         f"{parsed}/{len(entries)} entries parsed, {len(snapshot)} members so far")

            # The first sample is taken before any scrolling
            if iteration > 0:
                self._scroll()

            if self.stop_event.wait(self.config.scroll_delay):
                raise ScrapeCancelled("collect members", "interrupted by operator")

        logger.info(f"Scrapping is done! Collected {len(snapshot)} members.")
        return snapshot

    def _extract_member(self, entry) -> Optional[MemberRecord]:
        """Returns None for entries that are not fully rendered yet."""
        try:
            avatar = self.session.find_one(self.selectors.member_avatar, parent=entry)
            kind = AccountKind.BOT if self._has_bot_tag(entry) else AccountKind.USER
            label = self.session.get_attribute(avatar, "aria-label")
        except BROWSER_ERRORS as e:
            logger.debug(f"Skipping member entry: {_error_message(e)}")
            return None

        if not label or not label.strip():
            return None

        identity, presence = parse_member_label(label)
        if not identity:
            return None

        own_username = self.config.own_username
        if own_username and identity.casefold() == own_username.casefold():
            return None

        return MemberRecord(identity=identity, presence=presence, kind=kind, observed_at=self.clock())

    def _has_bot_tag(self, entry) -> bool:
        try:
            self.session.find_one(self.selectors.bot_tag, parent=entry)
        except NoSuchElementException:
            return False
        return True

    def _scroll(self):
        try:
            member_list = self.session.find_one(self.selectors.member_list)
            self.session.run_script(SCROLL_SCRIPT, member_list, SCROLL_STEP)
        except BROWSER_ERRORS as e:
            raise ScrapeFailure("scroll member list", _error_message(e)) from e


# ===============================================
# ||            SESSION CONTROLLER             ||
# ===============================================
class SessionController:
    """
    Owns the browser session: login, server selection, collection and output.

    A failed attempt is never resumed. The session is thrown away and, if the
    restart policy allows it, the whole sequence starts over with a new one.
    ``cancel()`` may be called from another thread at any time.
    """
    def __init__(self, config: ScraperConfig, outputs=(), session_factory=None,
                 stop_event: Optional[threading.Event] = None):
        self.config = config
        self.outputs = list(outputs)
        self.session_factory = session_factory or BrowserSession.open
        self.stop_event = stop_event or threading.Event()
        self.session = None

    def serve(self) -> int:
        """Runs once, or every ``scrape_interval`` minutes until cancelled. Returns the number of runs."""
        runs = 0
        while True:
            self.run()
            runs += 1
            if self.config.scrape_interval <= 0:
                return runs
            logger.info(f"Sleeping {self.config.scrape_interval:g} minutes before next scrapping")
            if self.stop_event.wait(self.config.scrape_interval * 60):
                raise ScrapeCancelled("wait for next run", "interrupted by operator")

    def run(self) -> RosterSnapshot:
        policy = self.config.restart
        for attempt in itertools.count(1):
            if self.stop_event.is_set():
                raise ScrapeCancelled("start session", "interrupted by operator")
            try:
                snapshot = self.run_attempt()
            except ScrapeCancelled:
                raise
            except ScraperError as e:
                if self.stop_event.is_set():
                    raise ScrapeCancelled(e.step, "interrupted by operator") from e
                logger.error(f"Attempt {attempt} failed during '{e.step}': {e.reason}")
                if not policy.allows(attempt):
                    logger.error(f"Giving up after {attempt} attempt(s).")
                    raise
                delay = policy.delay(attempt)
                logger.info(f"Restarting session in {delay:.0f} seconds...")
                if self.stop_event.wait(delay):
                    raise ScrapeCancelled("restart session", "interrupted by operator") from e
                continue

            self._write_outputs(snapshot)
            return snapshot

    def run_attempt(self) -> RosterSnapshot:
        """One full pass on a fresh session. The session is closed whatever happens."""
        self.session = self.session_factory(self.config)
        try:
            logger.info("Scrapper is running")
            self.login()
            self.open_server()
            collector = RosterCollector(self.session, self.config, stop_event=self.stop_event)
            return collector.collect()
        finally:
            self._close_session()

    def login(self):
        config = self.config
        selectors = config.selectors
        try:
            self.session.navigate(config.login_url)
        except BROWSER_ERRORS as e:
            raise NavigationFailure("open login page", _error_message(e)) from e

        # No readiness polling here, the page gets a fixed time to render
        self._pause(config.load_time, "wait for login page")
        self._fill(selectors.email_field, config.email, "fill email field")
        self._fill(selectors.password_field, config.password, "fill password field")
        self._click(selectors.submit_button, "click submit button", InteractionFailure)
        logger.info("Login form submitted.")

        if config.two_factor_wait > 0:
            logger.info(f"Waiting {config.two_factor_wait:g} seconds for two-factor confirmation...")
            self._pause(config.two_factor_wait, "wait for two-factor confirmation")
        self._pause(config.load_time, "wait for post-login content")

    def open_server(self):
        config = self.config
        selectors = config.selectors
        if config.server_name:
            selector = selectors.server_by_name.format(name=_css_string(config.server_name))
        else:
            selector = selectors.server_by_id.format(id=_css_string(config.server_id))
        self._click(selector, "open server", NavigationFailure)
        logger.info(f"Opened server '{config.server_label}'.")
        self._pause(config.server_load_time, "wait for server")

        if not selectors.members_toggle:
            return
        try:
            toggle = self.session.find_one(selectors.members_toggle)
        except NoSuchElementException:
            logger.info("Member list toggle not found, assuming the member list is already shown.")
            return
        except BROWSER_ERRORS as e:
            raise NavigationFailure("find member list toggle", _error_message(e)) from e
        try:
            self.session.click(toggle)
        except BROWSER_ERRORS as e:
            raise NavigationFailure("show member list", _error_message(e)) from e
        self._pause(config.server_load_time, "wait for member list")

    def cancel(self):
        """Stops the run and closes the browser. No new attempt is started afterwards."""
        self.stop_event.set()
        self._close_session()

    def _fill(self, selector: str, text: str, step: str):
        try:
            element = self.session.find_one(selector)
            self.session.send_keys(element, text)
        except BROWSER_ERRORS as e:
            raise InteractionFailure(step, _error_message(e)) from e

    def _click(self, selector: str, step: str, error_class):
        try:
            element = self.session.find_one(selector)
            self.session.click(element)
        except BROWSER_ERRORS as e:
            raise error_class(step, _error_message(e)) from e

    def _pause(self, seconds: float, step: str):
        if self.stop_event.wait(seconds):
            raise ScrapeCancelled(step, "interrupted by operator")

    def _close_session(self):
        session = self.session
        if session is None:
            return
        try:
            session.close()
        except BROWSER_ERRORS as e:
            logger.debug(f"Session was already closed: {_error_message(e)}")

    def _write_outputs(self, snapshot: RosterSnapshot):
        logger.info(f"Writing {len(snapshot)} members to {len(self.outputs)} output(s)...")
        for output in self.outputs:
            try:
                output.write_snapshot(snapshot)
            except Exception as e:
                logger.error(f"Couldn't add users to output: {e}")
                raise OutputFailure("write output", str(e)) from e


# ===============================================
# ||              MAIN EXECUTION               ||
# ===============================================
def setup_logging(log_path: Optional[str] = None, verbose: bool = False):
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file_error = None
    if log_path:
        try:
            handlers.append(logging.FileHandler(log_path))
        except OSError as e:
            log_file_error = e
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT, handlers=handlers)
    if log_file_error:
        logger.warning(f"Couldn't create log file: {log_file_error}. Using stderr for logging.")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="A Selenium-based scraper for Discord server member lists.")
    parser.add_argument("--selenium-url", type=str, default=None, help="Selenium server URL (overrides --selenium-port).")
    parser.add_argument("--selenium-port", type=int, default=DEFAULT_SELENIUM_PORT, help="Port of the local Selenium server.")
    parser.add_argument("--selenium-browser", type=str, choices=BROWSERS, default="firefox", help="Browser to be used by Selenium.")
    parser.add_argument("--headless", action='store_true', help="Run the browser without a window.")
    parser.add_argument("--command-timeout", type=float, default=60.0, help="Seconds before a single browser command is abandoned.")
    parser.add_argument("-i", "--scrapping-interval", type=float, default=0, help="Minutes between scrapping runs. Defaults to 0, a single run; pass e.g. 2 to rescrape every 2 minutes.")
    parser.add_argument("--d-load-time", type=float, default=10, help="Seconds needed to load the Discord page.")
    parser.add_argument("--d-email", type=str, default=None, help="Discord email (or DISCORD_EMAIL).")
    parser.add_argument("--d-password", type=str, default=None, help="Discord password (or DISCORD_PASSWORD).")
    parser.add_argument("--d-server-id", type=str, default="", help="Discord server ID to scrap.")
    parser.add_argument("--d-server-name", type=str, default="", help="Discord server name to scrap.")
    parser.add_argument("--d-username", type=str, default="", help="Your Discord username, left out of the output.")
    parser.add_argument("-s", "--d-server-max-scrolls", type=int, default=150,
                        help="Scroll iterations over the member list (10 for 100 users, 100 for 1000 users, etc).")
    parser.add_argument("-r", "--d-server-scroll-refresh-time", type=int, default=300,
                        help="Milliseconds to wait after each scroll (higher is safer, lower is faster).")
    parser.add_argument("--two-factor-wait", type=float, default=0, help="Seconds to wait after login to type a 2FA code.")
    parser.add_argument("--max-attempts", type=int, default=3, help="Whole-session attempts before giving up (0 retries forever).")
    parser.add_argument("--retry-backoff", type=float, default=30, help="Seconds to wait before the first restart.")
    parser.add_argument("-o", "--output", type=str, default=None, help="Path to the output .csv file (temporary file if omitted).")
    parser.add_argument("-l", "--log", type=str, default=None, help="Path to a log file.")
    parser.add_argument("--mongo-uri", type=str, default=os.getenv('MONGO_DB_URI'), help="Also upsert members into MongoDB.")
    parser.add_argument("-v", "--verbose", action='store_true', help="Log every iteration of the scrape.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ScraperConfig:
    selenium_url = args.selenium_url or f"http://localhost:{args.selenium_port}/wd/hub"
    restart = RestartPolicy(
        max_attempts=args.max_attempts if args.max_attempts > 0 else None,
        backoff=args.retry_backoff,
    )
    return ScraperConfig(
        email=args.d_email or os.getenv('DISCORD_EMAIL', ''),
        password=args.d_password or os.getenv('DISCORD_PASSWORD', ''),
        server_id=args.d_server_id,
        server_name=args.d_server_name,
        own_username=args.d_username,
        selenium_url=selenium_url,
        browser=args.selenium_browser,
        headless=args.headless,
        command_timeout=args.command_timeout,
        load_time=args.d_load_time,
        two_factor_wait=args.two_factor_wait,
        max_iterations=args.d_server_max_scrolls,
        scroll_delay=args.d_server_scroll_refresh_time / 1000,
        scrape_interval=args.scrapping_interval,
        restart=restart,
    )


def build_outputs(args: argparse.Namespace, config: ScraperConfig) -> List:
    outputs = [CSVManager(args.output) if args.output else CSVManager.temporary()]
    if args.mongo_uri:
        outputs.append(MongoDBManager(args.mongo_uri, server=config.server_label))
    return outputs


def main(argv=None) -> int:
    load_dotenv()
    args = parse_args(argv)
    setup_logging(args.log, args.verbose)

    try:
        config = build_config(args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    try:
        outputs = build_outputs(args, config)
    except Exception as e:
        logger.error(f"Couldn't prepare output: {e}")
        return 1

    controller = SessionController(config, outputs)
    outcome: Dict[str, int] = {}

    # Scraping runs in its own thread so the main thread stays free for Ctrl + C
    def scrape():
        try:
            runs = controller.serve()
            logger.info(f"Finished {runs} scrapping run(s).")
            outcome['code'] = 0
        except ScrapeCancelled:
            logger.info("Scrapping cancelled.")
            outcome['code'] = 0
        except ScraperError as e:
            logger.error(f"Scrapper stopped: {e}")
            outcome['code'] = 1

    def handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name} signal, closing tool.")
        controller.cancel()

    previous_handlers = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    worker = threading.Thread(target=scrape, name="roster-scraper", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.5)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
        for output in outputs:
            output.close()

    return outcome.get('code', 1)


if __name__ == "__main__":
    raise SystemExit(main())
