import sys
import logging
from typing import Optional

import click

from cirunner.core import config
from cirunner.core.constants import EXIT_FAILURE, EXIT_SUCCESS, EXIT_UNSTABLE
from cirunner.core.exceptions import PipelineDefinitionError
from cirunner.executor.pipeline_executor import PipelineExecutor, RunContext, run_pipeline
from cirunner.models.run_result import BuildStatus
from cirunner.parser.pipeline_reader import discover_pipeline_file, load_pipeline
from cirunner.services.repo_service import resolve_workspace
from cirunner.services.run_history import RunHistory
from cirunner.services.scm_poller import ScmPoller
from cirunner.utils.cli_utils import async_click, render_run
from cirunner.utils.logging_config import setup_logging

logger = logging.getLogger("cirunner.cli")

_EXIT_CODES = {
    BuildStatus.SUCCESS: EXIT_SUCCESS,
    BuildStatus.UNSTABLE: EXIT_UNSTABLE,
}


def exit_code_for(status: BuildStatus) -> int:
    return _EXIT_CODES.get(status, EXIT_FAILURE)


def _load(pipeline: Optional[str], workspace: str):
    path = discover_pipeline_file(workspace, pipeline)
    try:
        return load_pipeline(path)
    except PipelineDefinitionError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("--log-dir", default=config.LOG_DIR, help="Directory for the dated log file ('' disables it)")
def main(verbose: bool, log_dir: str):
    """Run declarative CI pipelines."""
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL, logging.INFO)
    setup_logging(level=level, log_dir=log_dir or None)


@main.command()
@click.option("-p", "--pipeline", default=None, help="Pipeline file (default: discovered or bundled)")
@click.option("-w", "--workspace", default=config.WORKSPACE, help="Workspace directory")
@click.option("-b", "--branch", default=config.DEFAULT_BRANCH, show_default=True)
@click.option("--repo-url", default=config.REPO_URL, help="Remote to clone/fetch in checkout steps")
@click.option("-c", "--changed", "changed", multiple=True, help="Changed path (repeatable); overrides git")
@click.option("--no-history", is_flag=True, help="Do not store the run")
def run(pipeline, workspace, branch, repo_url, changed, no_history):
    """Execute the pipeline once and exit with its status."""
    workspace, managed = resolve_workspace(workspace, repo_url)
    definition = _load(pipeline, workspace)
    history = None if no_history else RunHistory(definition.name)

    context = RunContext(
        workspace=workspace,
        branch=branch,
        repo_url=repo_url,
        changed_paths=list(changed) if changed else None,
        manage_workspace=managed,
    )
    result = run_pipeline(definition, context, history=history)
    click.echo(render_run(result))
    sys.exit(exit_code_for(result.status))


@main.command()
@click.argument("pipeline", required=False)
@click.option("-w", "--workspace", default=config.WORKSPACE)
def validate(pipeline, workspace):
    """Parse and validate a pipeline file, then print its stage tree."""
    workspace, _ = resolve_workspace(workspace)
    definition = _load(pipeline, workspace)
    stage_count = sum(1 for _ in definition.iter_stages())
    click.echo(f"{definition.name}: OK ({stage_count} stages)")
    for stage in definition.stages:
        _echo_stage(stage, 1)
    for trigger in definition.triggers:
        click.echo(f"trigger: poll_scm '{trigger.poll_scm}'")


def _echo_stage(stage, depth):
    guard = ""
    if stage.when is not None:
        parts = []
        if stage.when.branch:
            parts.append(f"branch={stage.when.branch}")
        if stage.when.changeset:
            parts.append(f"changeset={','.join(stage.when.changeset)}")
        guard = f"  [when {stage.when.mode}: {' '.join(parts)}]"
    kind = "parallel" if stage.is_group else f"{len(stage.steps)} steps"
    click.echo(f"{'  ' * depth}{stage.name} ({kind}){guard}")
    for child in stage.parallel:
        _echo_stage(child, depth + 1)


@main.command()
@click.option("-p", "--pipeline", default=None)
@click.option("-w", "--workspace", default=config.WORKSPACE)
@click.option("-n", "--limit", default=20, show_default=True)
def history(pipeline, workspace, limit):
    """List stored runs, newest first."""
    workspace, _ = resolve_workspace(workspace)
    definition = _load(pipeline, workspace)
    runs = RunHistory(definition.name).list_runs()[:limit]
    if not runs:
        click.echo("No runs recorded.")
        return
    for r in runs:
        started = r.started_at.strftime("%Y-%m-%d %H:%M") if r.started_at else "-"
        click.echo(f"#{r.build_number:<5} {r.status.value:<9} {r.branch:<20} {r.commit[:12]:<12} {started}  {r.duration_seconds:.0f}s")


@main.command()
@click.option("-p", "--pipeline", default=None)
@click.option("-w", "--workspace", default=config.WORKSPACE)
@click.option("-b", "--branch", default=config.DEFAULT_BRANCH, show_default=True)
@click.option("--repo-url", default=config.REPO_URL, help="Remote to poll")
@async_click
async def poll(pipeline, workspace, branch, repo_url):
    """Poll the remote on the pipeline's schedule and build on change."""
    if not repo_url:
        raise click.UsageError("--repo-url (or CIRUNNER_REPO_URL) is required for polling")
    workspace, managed = resolve_workspace(workspace, repo_url)
    definition = _load(pipeline, workspace)
    history = RunHistory(definition.name)
    executor = PipelineExecutor(history=history)

    async def on_change(commit: str):
        context = RunContext(workspace=workspace, branch=branch, repo_url=repo_url, manage_workspace=managed)
        result = await executor.run(definition, context)
        click.echo(render_run(result))

    poller = ScmPoller(definition, repo_url, branch, history, on_change)
    click.echo(f"Polling {repo_url} ({branch}) for '{definition.name}'")
    await poller.run_forever()


@main.command()
@click.option("--host", default=config.API_HOST, show_default=True)
@click.option("--port", default=config.API_PORT, show_default=True)
def serve(host, port):
    """Serve the HTTP API."""
    import uvicorn
    uvicorn.run("main:app", host=host, port=port)


if __name__ == "__main__":
    main()
