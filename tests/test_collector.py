"""Tests for the member list collector and aria-label parsing."""

import threading
from datetime import datetime

import pytest
from urllib3.exceptions import ReadTimeoutError

from conftest import SELECTORS, FakeEntry, FakeSession, make_config, member
from roster_models import AccountKind, ScrapeCancelled, ScrapeFailure
from roster_scraper import SCROLL_SCRIPT, SCROLL_STEP, RosterCollector, parse_member_label


# ---------------------------------------------------------------------------
# TestParseMemberLabel
# ---------------------------------------------------------------------------

class TestParseMemberLabel:
    """Tests for splitting avatar labels into username and status."""

    def test_online_member(self):
        assert parse_member_label("alice, Online") == ("alice", "Online")

    def test_offline_member_has_no_separator(self):
        assert parse_member_label("bob") == ("bob", "Offline")

    def test_multi_word_status(self):
        assert parse_member_label("carol, Do Not Disturb") == ("carol", "Do Not Disturb")

    def test_status_text_after_first_comma_is_kept_verbatim(self):
        assert parse_member_label("dave, Playing Chess, ranked") == ("dave", "Playing Chess, ranked")

    def test_only_one_leading_space_is_trimmed(self):
        assert parse_member_label("erin,  Idle") == ("erin", " Idle")

    def test_missing_space_after_separator(self):
        assert parse_member_label("frank,Idle") == ("frank", "Idle")

    def test_empty_status_counts_as_offline(self):
        assert parse_member_label("gina, ") == ("gina", "Offline")


# ---------------------------------------------------------------------------
# TestCollect
# ---------------------------------------------------------------------------

class TestCollect:
    """Tests for RosterCollector.collect()."""

    def test_last_observation_wins(self, clock):
        """A member seen in several iterations keeps the latest record only."""
        session = FakeSession(frames=[
            [member("alice, Online"), member("bob")],
            [member("alice, Idle"), member("carol, Online")],
            [member("carol, Online")],
        ])
        snapshot = RosterCollector(session, make_config(max_iterations=3), clock=clock).collect()

        assert set(snapshot) == {"alice", "bob", "carol"}
        assert snapshot["alice"].presence == "Idle"
        assert snapshot["alice"].observed_at == datetime(2024, 3, 1, 12, 2)
        assert snapshot["bob"].presence == "Offline"
        assert snapshot["carol"].observed_at == datetime(2024, 3, 1, 12, 4)

    def test_detects_bot_accounts(self, clock):
        session = FakeSession(frames=[[member("helper, Online", bot=True), member("alice, Online")]])
        snapshot = RosterCollector(session, make_config(max_iterations=1), clock=clock).collect()

        assert snapshot["helper"].kind is AccountKind.BOT
        assert snapshot["alice"].kind is AccountKind.USER

    def test_skips_unrendered_entries(self, clock):
        """Entries without avatar or label are left out without failing the run."""
        session = FakeSession(frames=[[
            FakeEntry(avatar=False),
            FakeEntry(label=None),
            FakeEntry(label="   "),
            FakeEntry(label="ghost, Online", stale=True),
            member("alice, Online"),
        ]])
        snapshot = RosterCollector(session, make_config(max_iterations=1), clock=clock).collect()

        assert list(snapshot) == ["alice"]

    def test_excludes_own_username_case_insensitively(self, clock):
        session = FakeSession(frames=[[member("alice, Online"), member("bob, Idle")]])
        config = make_config(max_iterations=1, own_username="Alice")
        snapshot = RosterCollector(session, config, clock=clock).collect()

        assert list(snapshot) == ["bob"]

    def test_single_iteration_never_scrolls(self, clock):
        session = FakeSession(frames=[[member("alice, Online")]])
        snapshot = RosterCollector(session, make_config(max_iterations=1), clock=clock).collect()

        assert session.scripts == []
        assert list(snapshot) == ["alice"]

    def test_scrolls_from_second_iteration_on(self, clock):
        session = FakeSession(frames=[[member("alice")]])
        RosterCollector(session, make_config(max_iterations=4), clock=clock).collect()

        assert session.find_all_calls == 4
        assert len(session.scripts) == 3
        script, args = session.scripts[0]
        assert script == SCROLL_SCRIPT
        assert args[0].selector == SELECTORS.member_list
        assert args[1] == SCROLL_STEP

    def test_failure_to_list_entries_aborts_the_run(self, clock):
        """A listing failure in iteration 2 raises; nothing is returned."""
        session = FakeSession(frames=[[member("alice, Online")]], fail_find_all_on=1)
        collector = RosterCollector(session, make_config(max_iterations=3), clock=clock)

        with pytest.raises(ScrapeFailure) as excinfo:
            collector.collect()

        assert excinfo.value.step == "find member entries"
        assert "invalid session id" in excinfo.value.reason

    def test_command_timeout_while_listing_aborts_the_run(self, clock):
        timeout = ReadTimeoutError(None, "/session/1/elements", "Read timed out. (read timeout=0.5)")
        session = FakeSession(fail_find_all_on=0, find_all_error=timeout)
        collector = RosterCollector(session, make_config(max_iterations=2), clock=clock)

        with pytest.raises(ScrapeFailure) as excinfo:
            collector.collect()

        assert excinfo.value.step == "find member entries"

    def test_scroll_failure_aborts_the_run(self, clock):
        session = FakeSession(frames=[[member("alice")]], fail_scroll=True)
        collector = RosterCollector(session, make_config(max_iterations=2), clock=clock)

        with pytest.raises(ScrapeFailure, match="scroll member list"):
            collector.collect()

    def test_missing_scroll_container_aborts_the_run(self, clock):
        session = FakeSession(frames=[[member("alice")]], missing={SELECTORS.member_list})
        collector = RosterCollector(session, make_config(max_iterations=2), clock=clock)

        with pytest.raises(ScrapeFailure, match="scroll member list"):
            collector.collect()

    def test_stops_when_cancelled(self, clock):
        stop_event = threading.Event()
        stop_event.set()
        session = FakeSession(frames=[[member("alice")]])
        collector = RosterCollector(session, make_config(), stop_event=stop_event, clock=clock)

        with pytest.raises(ScrapeCancelled):
            collector.collect()
        assert session.find_all_calls == 0
