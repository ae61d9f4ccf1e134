import asyncio
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

from cirunner.parser.pipeline_reader import parse_pipeline
from cirunner.services.cron import CronError, CronSchedule
from cirunner.services.scm_poller import ScmPoller


# ---------------------------------------------------------------------------
# Cron
# ---------------------------------------------------------------------------
def test_hashed_step_is_stable_and_every_five_minutes():
    a = CronSchedule.parse("H/5 * * * *", seed="openhands")
    b = CronSchedule.parse("H/5 * * * *", seed="openhands")
    assert a.minutes == b.minutes
    assert len(a.minutes) == 12
    offset = min(a.minutes)
    assert 0 <= offset < 5
    assert a.minutes == frozenset(range(offset, 60, 5))


def test_hash_depends_on_seed():
    seeds = ["job-%d" % i for i in range(20)]
    offsets = {min(CronSchedule.parse("H/5 * * * *", seed=s).minutes) for s in seeds}
    assert len(offsets) > 1


def test_plain_fields_and_lists():
    schedule = CronSchedule.parse("0,30 9-17 * * 1-5")
    assert schedule.minutes == frozenset({0, 30})
    assert schedule.hours == frozenset(range(9, 18))
    # Monday 2026-10-19 09:30
    assert schedule.matches(datetime(2026, 10, 19, 9, 30))
    assert not schedule.matches(datetime(2026, 10, 19, 9, 31))
    # Sunday
    assert not schedule.matches(datetime(2026, 10, 18, 9, 30))


def test_hash_range_and_aliases():
    schedule = CronSchedule.parse("H(0-2) H(1-3) * * *", seed="x")
    assert len(schedule.minutes) == 1 and min(schedule.minutes) <= 2
    assert len(schedule.hours) == 1 and 1 <= min(schedule.hours) <= 3
    daily = CronSchedule.parse("@daily", seed="x")
    assert len(daily.minutes) == 1 and len(daily.hours) == 1
    assert len(daily.days_of_month) == 31


def test_sunday_as_seven():
    schedule = CronSchedule.parse("0 0 * * 7")
    assert schedule.days_of_week == frozenset({0})
    assert schedule.matches(datetime(2026, 10, 18, 0, 0))


def test_next_after():
    schedule = CronSchedule.parse("15 * * * *")
    assert schedule.next_after(datetime(2026, 10, 19, 10, 15, 30)) == datetime(2026, 10, 19, 11, 15)


@pytest.mark.parametrize("expr", ["* * * *", "61 * * * *", "*/0 * * * *", "a * * * *", "5-2 * * * *"])
def test_invalid_expressions(expr):
    with pytest.raises(CronError):
        CronSchedule.parse(expr)


# ---------------------------------------------------------------------------
# SCM poller
# ---------------------------------------------------------------------------
DEFINITION = parse_pipeline("""
name: polled
triggers:
  - poll_scm: "* * * * *"
stages:
  - name: Build
    steps: [make]
""")

NOW = datetime(2026, 10, 19, 12, 0)


@pytest.fixture
def history():
    h = MagicMock()
    h.last_commit.return_value = "aaa111"
    return h


def test_change_triggers_run(history):
    on_change = AsyncMock()
    poller = ScmPoller(DEFINITION, "https://example.com/r.git", "main", history, on_change)
    with patch("cirunner.services.scm_poller.repo_service.remote_head", return_value="bbb222"):
        assert asyncio.run(poller.poll_once(NOW)) == "bbb222"
    on_change.assert_awaited_once_with("bbb222")
    assert poller.timeline[-1]["event"] == "triggered"


def test_same_head_does_nothing(history):
    on_change = AsyncMock()
    poller = ScmPoller(DEFINITION, "https://example.com/r.git", "main", history, on_change)
    with patch("cirunner.services.scm_poller.repo_service.remote_head", return_value="aaa111"):
        assert asyncio.run(poller.poll_once(NOW)) is None
    on_change.assert_not_awaited()
    assert poller.timeline[-1]["event"] == "no_changes"


def test_remembers_last_seen_head(history):
    on_change = AsyncMock()
    poller = ScmPoller(DEFINITION, "https://example.com/r.git", "main", history, on_change)

    async def run_test():
        with patch("cirunner.services.scm_poller.repo_service.remote_head", return_value="bbb222"):
            await poller.poll_once(NOW)
            await poller.poll_once(NOW)

    asyncio.run(run_test())
    assert on_change.await_count == 1


def test_poll_error_recorded(history):
    poller = ScmPoller(DEFINITION, "https://example.com/r.git", "main", history, AsyncMock())
    with patch("cirunner.services.scm_poller.repo_service.remote_head", return_value=""):
        assert asyncio.run(poller.poll_once(NOW)) is None
    assert poller.timeline[-1]["event"] == "poll_error"


def test_not_due_skips_remote_query(history):
    definition = parse_pipeline("""
name: hourly
triggers:
  - poll_scm: "30 * * * *"
stages:
  - name: Build
    steps: [make]
""")
    poller = ScmPoller(definition, "https://example.com/r.git", "main", history, AsyncMock())
    with patch("cirunner.services.scm_poller.repo_service.remote_head") as mock_head:
        assert asyncio.run(poller.poll_once(NOW)) is None
    mock_head.assert_not_called()


def test_run_forever_without_triggers_returns(history):
    definition = parse_pipeline("name: manual\nstages:\n  - name: A\n    steps: [a]\n")
    poller = ScmPoller(definition, "https://example.com/r.git", "main", history, AsyncMock())
    asyncio.run(poller.run_forever())
    assert poller.timeline == []


def test_run_forever_ticks(history):
    poller = ScmPoller(DEFINITION, "https://example.com/r.git", "main", history, AsyncMock(), tick_seconds=0)
    with patch("cirunner.services.scm_poller.repo_service.remote_head", return_value="aaa111"):
        asyncio.run(poller.run_forever(max_ticks=3))
    assert [e["event"] for e in poller.timeline] == ["no_changes"] * 3
