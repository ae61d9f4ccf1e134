"""
Pipeline Executor
=================
Runs a PipelineDefinition and returns a fully resolved PipelineRun.

Lifecycle:
    1. Reserve a build number, resolve commit + changeset
    2. Resolve environment bindings (once, read-only)
    3. Run top-level stages in order under the whole-run timeout
    4. Mark in-flight stages aborted if the timeout fired
    5. Run pipeline post actions exactly once
    6. Persist the run and apply the build discarder

Stage semantics:
    - Guards: a false ``when`` skips the stage (and its whole subtree).
    - Sequential: after a failed/aborted stage, later top-level stages are
      skipped; likewise after an unstable one when
      options.skip_stages_after_unstable is set.
    - Parallel: children start together; the group takes the worst child
      status. Siblings are never cancelled unless the group is fail_fast.
      All children skipped → group skipped (failure if ``required``).
    - Leaf: steps run in order; a failing ``sh`` stops the body; a
      ``junit`` step with failed tests marks the stage unstable and the
      body continues.

Fault tolerance:
    An unexpected exception inside a stage is logged and recorded as a
    failure on that stage. ``run`` always returns a PipelineRun.
"""
import time
import uuid
import asyncio
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional

from cirunner.core.config import DEFAULT_BRANCH
from cirunner.core.constants import POST_CONDITIONS
from cirunner.core.exceptions import WorkspaceError
from cirunner.executor.environment import declared_subset, expand, resolve_environment
from cirunner.executor.guards import evaluate_guard
from cirunner.executor.shell_runner import DockerShellRunner, LocalShellRunner, ShellRunner, create_log_excerpt
from cirunner.models.pipeline import (
    Agent,
    CheckoutStep,
    CleanWorkspaceStep,
    CoverageStep,
    EchoStep,
    JUnitStep,
    NotifyStep,
    PipelineDefinition,
    PostActions,
    ShellStep,
    Stage,
)
from cirunner.models.run_result import BuildStatus, PipelineRun, StageResult, worst
from cirunner.parser.coverage_reader import read_coverage_reports
from cirunner.parser.junit_reader import read_junit_results
from cirunner.services import repo_service
from cirunner.services.run_history import RunHistory
from cirunner.utils.path_utils import resolve_in_workspace

logger = logging.getLogger(__name__)
stage_logger = logging.getLogger(f"{__name__}.stage")

RunnerFactory = Callable[[Agent, str], ShellRunner]

_STOPPING = (BuildStatus.FAILURE, BuildStatus.ABORTED)


@dataclass
class RunContext:
    """
    Per-run inputs that are not part of the pipeline definition.

    Fields
    ------
    workspace : str
        Directory stages run in.
    branch : str
        Branch being built (guards match against it).
    repo_url : str
        Remote to clone/fetch in ``checkout`` steps ("" = use workspace as-is).
    changed_paths : list[str] | None
        Explicit changeset. None → computed with git against the last
        built commit.
    manage_workspace : bool
        Whether ``clean_ws`` may delete the workspace contents. Only a
        workspace the runner owns should be cleaned.
    build_number : int | None
        Override; otherwise reserved from history.
    """
    workspace: str
    branch: str = DEFAULT_BRANCH
    repo_url: str = ""
    changed_paths: Optional[List[str]] = None
    manage_workspace: bool = False
    build_number: Optional[int] = None


def default_runner_factory(agent: Agent, workspace: str) -> ShellRunner:
    if agent.kind == "docker":
        return DockerShellRunner(workspace, image=agent.image)
    return LocalShellRunner()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def build_result_tree(stage: Stage, parent_path: str = "") -> StageResult:
    path = f"{parent_path}/{stage.name}" if parent_path else stage.name
    return StageResult(
        name=stage.name,
        path=path,
        children=[build_result_tree(child, path) for child in stage.parallel],
    )


def _mark_skipped(result: StageResult, reason: str) -> None:
    for node in result.walk():
        node.status = BuildStatus.SKIPPED
        node.skip_reason = reason


def _abort_running(result: StageResult, reason: str) -> None:
    now = _now()
    for node in result.walk():
        if node.status == BuildStatus.RUNNING:
            node.status = BuildStatus.ABORTED
            node.error = reason
            node.finished_at = now
            if node.started_at:
                node.duration_seconds = round((now - node.started_at).total_seconds(), 3)


class PipelineExecutor:
    """
    Executes pipeline definitions. One executor can run many pipelines;
    per-run state lives in ``_PipelineExecution``.
    """

    def __init__(
        self,
        history: Optional[RunHistory] = None,
        runner_factory: RunnerFactory = default_runner_factory,
    ) -> None:
        self.history = history
        self.runner_factory = runner_factory

    async def run(self, definition: PipelineDefinition, context: RunContext) -> PipelineRun:
        execution = _PipelineExecution(self, definition, context)
        run = await execution.execute()
        if self.history is not None:
            try:
                self.history.save(run, retention=definition.options.history_retention_count)
            except OSError as e:
                logger.error("Could not persist run #%d: %s", run.build_number, e)
        return run


def run_pipeline(
    definition: PipelineDefinition,
    context: RunContext,
    history: Optional[RunHistory] = None,
) -> PipelineRun:
    """Synchronous entry point for the CLI."""
    return asyncio.run(PipelineExecutor(history=history).run(definition, context))


class _PipelineExecution:
    """State of a single pipeline run."""

    def __init__(self, executor: PipelineExecutor, definition: PipelineDefinition, context: RunContext) -> None:
        self.executor = executor
        self.definition = definition
        self.context = context
        self.options = definition.options
        self.env: Mapping[str, str] = {}
        self.changeset_override = context.changed_paths is not None
        self.results = [build_result_tree(stage) for stage in definition.stages]
        self.run: Optional[PipelineRun] = None
        self._post_sink: Optional[StageResult] = None

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def execute(self) -> PipelineRun:
        ctx = self.context
        history = self.executor.history
        start = time.monotonic()

        build_number = ctx.build_number or (history.next_build_number() if history else 1)
        commit = repo_service.head_commit(ctx.workspace)
        if self.changeset_override:
            changed = list(ctx.changed_paths or [])
        else:
            changed = repo_service.changed_paths(ctx.workspace, history.last_commit() if history else "")

        run_vars = {
            "WORKSPACE": ctx.workspace,
            "BRANCH_NAME": ctx.branch,
            "BUILD_NUMBER": str(build_number),
            "JOB_NAME": self.definition.name,
        }
        if commit:
            run_vars["GIT_COMMIT"] = commit
        self.env = resolve_environment(self.definition.environment, run_vars)

        run = PipelineRun(
            run_id=str(uuid.uuid4())[:12],
            build_number=build_number,
            pipeline=self.definition.name,
            branch=ctx.branch,
            commit=commit,
            changed_paths=changed,
            environment=declared_subset(self.env, self.definition.environment, run_vars),
            stages=self.results,
            started_at=_now(),
        )
        self.run = run

        logger.info(
            "[RUN] %s #%d | branch=%s | commit=%s | %d changed paths",
            run.pipeline, build_number, ctx.branch, commit[:12] or "-", len(changed),
        )

        timeout = self.options.timeout_minutes * 60
        timed_out = False
        try:
            await asyncio.wait_for(self._run_sequence(self.definition.stages, self.results), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            reason = f"Timeout after {self.options.timeout_minutes:g} minutes"
            logger.error("[RUN] %s; aborting in-flight stages", reason)
            for result in self.results:
                _abort_running(result, reason)

        if timed_out:
            run.status = BuildStatus.ABORTED
        else:
            run.status = worst(r.status for r in self.results)

        run.status = await self._run_pipeline_post(run.status)

        run.finished_at = _now()
        run.duration_seconds = round(time.monotonic() - start, 3)
        logger.info(
            "[RUN] %s #%d finished | status=%s | time=%.2fs",
            run.pipeline, build_number, run.status.value, run.duration_seconds,
        )
        return run

    async def _run_sequence(self, stages: List[Stage], results: List[StageResult]) -> None:
        stop_reason = ""
        for stage, result in zip(stages, results):
            if stop_reason:
                _mark_skipped(result, stop_reason)
                logger.info("[STAGE] %s skipped (%s)", result.path, stop_reason)
                continue

            await self._run_stage(stage, result, self.definition.agent)

            if result.status in _STOPPING:
                stop_reason = f"earlier stage '{stage.name}' ended {result.status.value}"
            elif result.status == BuildStatus.UNSTABLE and self.options.skip_stages_after_unstable:
                stop_reason = f"earlier stage '{stage.name}' ended unstable"

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _run_stage(self, stage: Stage, result: StageResult, agent: Agent) -> None:
        should_run, reason = evaluate_guard(stage.when, self.context.branch, self.run.changed_paths)
        if not should_run:
            _mark_skipped(result, reason)
            logger.info("[STAGE] %s skipped (%s)", result.path, reason)
            return

        agent = stage.agent or agent
        result.status = BuildStatus.RUNNING
        result.started_at = _now()
        started = time.monotonic()
        logger.info("[STAGE] %s started", result.path)

        try:
            if stage.is_group:
                status = await self._run_group(stage, result, agent)
            else:
                status = await self._run_leaf(stage, result, agent)
        except Exception as e:
            logger.exception("[STAGE] %s crashed", result.path)
            result.error = f"Unexpected error: {type(e).__name__}: {e}"
            status = BuildStatus.FAILURE

        if stage.post is not None and not stage.post.is_empty() and status != BuildStatus.SKIPPED:
            try:
                status = await self._run_post(stage.post, status, result, agent)
            except Exception as e:
                logger.exception("[STAGE] %s post actions crashed", result.path)
                result.error = result.error or f"Unexpected error in post: {type(e).__name__}: {e}"
                status = BuildStatus.FAILURE

        result.status = status
        result.finished_at = _now()
        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info("[STAGE] %s finished | status=%s | time=%.2fs", result.path, status.value, result.duration_seconds)

    async def _run_group(self, stage: Stage, result: StageResult, agent: Agent) -> BuildStatus:
        tasks = {
            asyncio.create_task(self._run_stage(child, child_result, agent), name=child_result.path): child_result
            for child, child_result in zip(stage.parallel, result.children)
        }
        pending = set(tasks)
        cancelled = set()
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                failed = [tasks[t] for t in done if tasks[t].status in _STOPPING]
                if stage.fail_fast and failed and pending:
                    logger.warning(
                        "[STAGE] %s failed fast on '%s'; cancelling %d sibling(s)",
                        result.path, failed[0].name, len(pending),
                    )
                    for t in pending:
                        t.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    for t in pending:
                        _abort_running(tasks[t], f"cancelled after '{failed[0].name}' failed")
                        cancelled.add(tasks[t].path)
                    pending = set()
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        statuses = [child.status for child in result.children]
        if all(s == BuildStatus.SKIPPED for s in statuses):
            if stage.required:
                result.error = "every parallel branch was skipped"
                return BuildStatus.FAILURE
            result.skip_reason = "every parallel branch was skipped"
            return BuildStatus.SKIPPED
        # Siblings aborted by fail_fast do not outrank the failure that caused it
        return worst(child.status for child in result.children if child.path not in cancelled)

    async def _run_leaf(self, stage: Stage, result: StageResult, agent: Agent) -> BuildStatus:
        runner = self.executor.runner_factory(agent, self.context.workspace)
        status = BuildStatus.SUCCESS
        for step in stage.steps:
            step_status = await self._run_step(step, result, runner)
            status = worst([status, step_status])
            if step_status == BuildStatus.FAILURE:
                break
        return status

    async def _run_post(self, post: PostActions, status: BuildStatus, sink: StageResult, agent: Agent) -> BuildStatus:
        """
        Run a post block: ``always`` first, then the block matching the
        (possibly updated) status. Post steps may worsen the status.
        """
        runner = self.executor.runner_factory(agent, self.context.workspace)
        status = await self._run_post_block("always", post.always, status, sink, runner)
        if status.value in POST_CONDITIONS:
            status = await self._run_post_block(status.value, getattr(post, status.value), status, sink, runner)
        return status

    async def _run_post_block(self, name: str, steps, status: BuildStatus, sink: StageResult, runner: ShellRunner) -> BuildStatus:
        if not steps:
            return status
        self._append(sink, f"[post:{name}]")
        for step in steps:
            step_status = await self._run_step(step, sink, runner)
            status = worst([status, step_status])
            if step_status == BuildStatus.FAILURE:
                break
        return status

    async def _run_pipeline_post(self, status: BuildStatus) -> BuildStatus:
        post = self.definition.post
        if post.is_empty():
            return status
        sink = StageResult(name="Post Actions", path="Post Actions", status=BuildStatus.RUNNING)
        self._post_sink = sink
        try:
            status = await self._run_post(post, status, sink, self.definition.agent)
        except Exception as e:
            logger.exception("[POST] post actions crashed")
            sink.log.append(f"post actions crashed: {type(e).__name__}: {e}")
            status = worst([status, BuildStatus.FAILURE])
        self.run.post_log = sink.log
        return status

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _append(self, sink: StageResult, line: str) -> None:
        if self.options.timestamps:
            line = f"[{_now().strftime('%H:%M:%S')}] {line}"
        sink.log.append(line)
        stage_logger.info("[%s] %s", sink.path, line)

    def _fail(self, sink: StageResult, message: str) -> BuildStatus:
        sink.error = message
        self._append(sink, f"ERROR: {message}")
        return BuildStatus.FAILURE

    async def _run_step(self, step, sink: StageResult, runner: ShellRunner) -> BuildStatus:
        if not step.enabled:
            self._append(sink, f"Skipping disabled {step.kind} step")
            return BuildStatus.SUCCESS

        if isinstance(step, ShellStep):
            return await self._run_shell(step, sink, runner)
        if isinstance(step, EchoStep):
            message = expand(step.message, self.env)
            self._append(sink, message)
            if sink is self._post_sink:
                self.run.post_messages.append(message)
            return BuildStatus.SUCCESS
        if isinstance(step, JUnitStep):
            return self._publish_junit(step, sink)
        if isinstance(step, CoverageStep):
            return self._publish_coverage(step, sink)
        if isinstance(step, CheckoutStep):
            return await self._checkout(sink)
        if isinstance(step, CleanWorkspaceStep):
            return await self._clean_workspace(step, sink)
        if isinstance(step, NotifyStep):
            return self._notify(step, sink)
        return self._fail(sink, f"Unsupported step kind '{step.kind}'")

    async def _run_shell(self, step: ShellStep, sink: StageResult, runner: ShellRunner) -> BuildStatus:
        try:
            cwd = resolve_in_workspace(self.context.workspace, step.dir)
        except ValueError as e:
            return self._fail(sink, str(e))

        where = f" (in {step.dir})" if step.dir else ""
        self._append(sink, f"[sh]{where} {step.script.strip()}")

        result = await runner.run(step.script, cwd, self.env, on_line=lambda line: self._append(sink, line))

        if result.error:
            return self._fail(sink, result.error)
        if not result.ok:
            sink.error = f"script returned exit code {result.exit_code}"
            self._append(sink, sink.error)
            logger.warning(
                "[STAGE] %s: exit %d\n%s",
                sink.path, result.exit_code, create_log_excerpt(result.output, head=5, tail=20),
            )
            return BuildStatus.FAILURE
        return BuildStatus.SUCCESS

    def _publish_junit(self, step: JUnitStep, sink: StageResult) -> BuildStatus:
        try:
            summary = read_junit_results(self.context.workspace, step.results)
        except (ET.ParseError, ValueError, OSError) as e:
            return self._fail(sink, f"Failed to read JUnit results '{step.results}': {e}")

        if not summary.files:
            if step.allow_empty_results:
                self._append(sink, f"No test report files were found matching '{step.results}'")
                return BuildStatus.SUCCESS
            return self._fail(sink, f"No test report files were found matching '{step.results}'")

        sink.tests = summary if sink.tests is None else sink.tests.merge(summary)
        self._append(
            sink,
            f"Recorded test results: {summary.total} tests, {summary.failed} failed, {summary.skipped} skipped",
        )
        if summary.failed:
            for name in summary.failed_cases:
                self._append(sink, f"FAILED {name}")
            return BuildStatus.UNSTABLE
        return BuildStatus.SUCCESS

    def _publish_coverage(self, step: CoverageStep, sink: StageResult) -> BuildStatus:
        try:
            reports = read_coverage_reports(self.context.workspace, step.reports, step.adapter)
        except KeyError:
            return self._fail(sink, f"Unknown coverage adapter '{step.adapter}'")
        except (ET.ParseError, ValueError, OSError) as e:
            return self._fail(sink, f"Failed to read coverage reports '{step.reports}': {e}")

        if not reports:
            if step.allow_empty_results:
                self._append(sink, f"No coverage reports were found matching '{step.reports}'")
                return BuildStatus.SUCCESS
            return self._fail(sink, f"No coverage reports were found matching '{step.reports}'")

        sink.coverage.extend(reports)
        for report in reports:
            self._append(sink, f"Coverage {report.file}: lines {report.line_rate:.1%}")
        return BuildStatus.SUCCESS

    async def _checkout(self, sink: StageResult) -> BuildStatus:
        ctx = self.context
        try:
            commit = await asyncio.to_thread(repo_service.checkout, ctx.workspace, ctx.branch, ctx.repo_url)
        except WorkspaceError as e:
            return self._fail(sink, str(e))

        history = self.executor.history
        if commit:
            self.run.commit = commit
            if not self.changeset_override:
                since = history.last_commit() if history else ""
                self.run.changed_paths = await asyncio.to_thread(repo_service.changed_paths, ctx.workspace, since)
        self._append(sink, f"Checked out {ctx.branch} at {commit[:12] or 'unknown revision'}")
        return BuildStatus.SUCCESS

    async def _clean_workspace(self, step: CleanWorkspaceStep, sink: StageResult) -> BuildStatus:
        if not self.context.manage_workspace:
            self._append(sink, "Workspace is not managed by the runner; leaving it in place")
            return BuildStatus.SUCCESS
        try:
            removed = await asyncio.to_thread(repo_service.clean_workspace, self.context.workspace, step.exclude)
        except (WorkspaceError, OSError) as e:
            return self._fail(sink, f"Workspace cleanup failed: {e}")
        self._append(sink, f"Deleted {removed} workspace entries")
        return BuildStatus.SUCCESS

    def _notify(self, step: NotifyStep, sink: StageResult) -> BuildStatus:
        note = {
            "to": expand(step.to, self.env),
            "subject": expand(step.subject, self.env),
            "body": expand(step.body, self.env),
        }
        self.run.notifications.append(note)
        logger.warning("No notification channel configured; recorded '%s' only", note["subject"])
        self._append(sink, f"Notification recorded: {note['subject']}")
        return BuildStatus.SUCCESS
