"""
Run Manager
===========
Starts pipeline runs in the background for the HTTP API and the SCM
poller, and answers "what is running / what ran" queries.

One run per workspace at a time: a second start request while a run is
in flight is rejected rather than queued.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from cirunner.executor.pipeline_executor import PipelineExecutor, RunContext, RunnerFactory, default_runner_factory
from cirunner.models.pipeline import PipelineDefinition
from cirunner.models.run_result import PipelineRun
from cirunner.services.run_history import RunHistory

logger = logging.getLogger(__name__)


class RunInProgressError(RuntimeError):
    def __init__(self, build_number: int) -> None:
        self.build_number = build_number
        super().__init__(f"Run #{build_number} is still in progress")


class RunManager:

    def __init__(
        self,
        definition: PipelineDefinition,
        workspace: str,
        history: RunHistory,
        repo_url: str = "",
        manage_workspace: bool = False,
        runner_factory: RunnerFactory = default_runner_factory,
    ) -> None:
        self.definition = definition
        self.workspace = workspace
        self.history = history
        self.repo_url = repo_url
        self.manage_workspace = manage_workspace
        self.executor = PipelineExecutor(history=history, runner_factory=runner_factory)
        self._active: Dict[int, asyncio.Task] = {}

    def active_build(self) -> Optional[int]:
        for number, task in self._active.items():
            if not task.done():
                return number
        return None

    def start_run(self, branch: str, changed_paths: Optional[List[str]] = None) -> int:
        """
        Schedule a run on the current event loop and return its build number.

        Raises
        ------
        RunInProgressError
            If another run is still executing.
        """
        active = self.active_build()
        if active is not None:
            raise RunInProgressError(active)

        build_number = self.history.next_build_number()
        context = RunContext(
            workspace=self.workspace,
            branch=branch,
            repo_url=self.repo_url,
            changed_paths=changed_paths,
            manage_workspace=self.manage_workspace,
            build_number=build_number,
        )
        task = asyncio.get_running_loop().create_task(
            self.executor.run(self.definition, context),
            name=f"{self.definition.name}#{build_number}",
        )
        task.add_done_callback(self._on_done)
        self._active = {n: t for n, t in self._active.items() if not t.done()}
        self._active[build_number] = task
        logger.info("Scheduled run #%d on %s", build_number, branch)
        return build_number

    async def run_and_wait(self, branch: str, changed_paths: Optional[List[str]] = None) -> PipelineRun:
        build_number = self.start_run(branch, changed_paths)
        return await self._active[build_number]

    def is_running(self, build_number: int) -> bool:
        task = self._active.get(build_number)
        return task is not None and not task.done()

    @staticmethod
    def _on_done(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Run task %s was cancelled", task.get_name())
        elif task.exception() is not None:
            logger.error("Run task %s crashed", task.get_name(), exc_info=task.exception())
