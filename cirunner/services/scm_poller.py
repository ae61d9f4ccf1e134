"""
SCM Poller
==========
Implements the ``poll_scm`` trigger: on every schedule tick, ask the
remote for the branch head and start a run when it moved.

Runs are awaited inline, so a slow build delays the next poll instead of
stacking concurrent builds of the same pipeline.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cirunner.core.config import POLL_TICK_SECONDS
from cirunner.models.pipeline import PipelineDefinition
from cirunner.services import repo_service
from cirunner.services.cron import CronSchedule
from cirunner.services.run_history import RunHistory

logger = logging.getLogger(__name__)

OnChange = Callable[[str], Awaitable[Any]]


class ScmPoller:
    """
    Watches one branch of one repository for a pipeline.

    Parameters
    ----------
    definition : PipelineDefinition
        Supplies the poll schedules (``triggers``) and the hash seed.
    repo_url : str
        Remote to query with ``git ls-remote``.
    branch : str
        Branch to watch.
    history : RunHistory
        Source of the last built commit.
    on_change : async callable(commit_sha)
        Invoked when the remote head differs from the last built commit.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        repo_url: str,
        branch: str,
        history: RunHistory,
        on_change: OnChange,
        tick_seconds: int = POLL_TICK_SECONDS,
    ) -> None:
        self.repo_url = repo_url
        self.branch = branch
        self.history = history
        self.on_change = on_change
        self.tick_seconds = tick_seconds
        self.schedules = [
            CronSchedule.parse(trigger.poll_scm, seed=definition.name)
            for trigger in definition.triggers
        ]
        self._last_seen = ""
        self.timeline: List[Dict[str, Any]] = []

    def _add_event(self, when: datetime, event: str, commit: str = "") -> None:
        self.timeline.append({"timestamp": when.isoformat(), "event": event, "commit": commit})

    def is_due(self, now: datetime) -> bool:
        return any(schedule.matches(now) for schedule in self.schedules)

    async def poll_once(self, now: datetime) -> Optional[str]:
        """
        One poll tick. Returns the commit a run was started for, else None.
        """
        if not self.is_due(now):
            return None

        head = await asyncio.to_thread(repo_service.remote_head, self.repo_url, self.branch)
        if not head:
            self._add_event(now, "poll_error")
            return None

        known = self._last_seen or self.history.last_commit()
        if head == known:
            logger.debug("No changes on %s (%s)", self.branch, head[:12])
            self._add_event(now, "no_changes", head)
            return None

        logger.info("Detected change on %s: %s -> %s", self.branch, known[:12] or "-", head[:12])
        self._last_seen = head
        self._add_event(now, "triggered", head)
        await self.on_change(head)
        return head

    async def run_forever(self, max_ticks: Optional[int] = None) -> None:
        if not self.schedules:
            logger.warning("Pipeline declares no poll_scm trigger; poller idle")
            return
        upcoming = [s.next_after(datetime.now()) for s in self.schedules]
        upcoming = [t for t in upcoming if t is not None]
        if upcoming:
            logger.info("Polling %s (%s); first check at %s", self.repo_url, self.branch, min(upcoming).strftime("%H:%M"))
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            now = datetime.now().replace(second=0, microsecond=0)
            try:
                await self.poll_once(now)
            except Exception:
                logger.exception("Poll tick failed")
            ticks += 1
            next_tick = now + timedelta(seconds=self.tick_seconds)
            await asyncio.sleep(max(0.0, (next_tick - datetime.now()).total_seconds()))
