import functools
import asyncio

import click

from cirunner.models.run_result import BuildStatus, PipelineRun, StageResult

_STATUS_COLOURS = {
    BuildStatus.SUCCESS: "green",
    BuildStatus.UNSTABLE: "yellow",
    BuildStatus.FAILURE: "red",
    BuildStatus.ABORTED: "magenta",
    BuildStatus.NOT_BUILT: "white",
    BuildStatus.SKIPPED: "cyan",
    BuildStatus.RUNNING: "blue",
}


def async_click(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


def styled_status(status: BuildStatus) -> str:
    return click.style(status.value.upper(), fg=_STATUS_COLOURS.get(status), bold=True)


def _stage_lines(result: StageResult, depth: int = 0):
    indent = "  " * depth
    extra = ""
    if result.skip_reason:
        extra = f"  ({result.skip_reason})"
    elif result.error:
        extra = f"  ({result.error})"
    elif result.tests is not None:
        extra = f"  ({result.tests.total} tests, {result.tests.failed} failed)"
    yield f"{indent}{result.name:<{max(1, 32 - len(indent))}} {styled_status(result.status)} {result.duration_seconds:7.1f}s{extra}"
    for child in result.children:
        yield from _stage_lines(child, depth + 1)


def render_run(run: PipelineRun) -> str:
    lines = [f"{run.pipeline} #{run.build_number} on {run.branch} ({run.commit[:12] or 'no commit'})"]
    for stage in run.stages:
        lines.extend(_stage_lines(stage))
    for message in run.post_messages:
        lines.append(message)
    lines.append(f"Finished: {styled_status(run.status)} in {run.duration_seconds:.1f}s")
    return "\n".join(lines)
