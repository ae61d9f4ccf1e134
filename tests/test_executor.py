"""
Unit Tests — Pipeline Executor
==============================
Stage ordering, parallel groups, guards, post actions, timeout and
report publishing. Shell steps go through a scripted fake runner, so no
real commands (or Docker) are needed.
"""
import asyncio
import pytest
from unittest.mock import patch

from cirunner.executor.pipeline_executor import PipelineExecutor, RunContext
from cirunner.executor.shell_runner import CommandResult, ShellRunner
from cirunner.models.run_result import BuildStatus
from cirunner.parser.pipeline_reader import load_default_pipeline, parse_pipeline
from cirunner.services.run_history import RunHistory


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
class ScriptedRunner(ShellRunner):
    """
    Fake shell: exit codes and delays are looked up by substring of the
    script. Everything else exits 0 immediately.
    """

    def __init__(self, exit_codes=None, delays=None):
        self.exit_codes = exit_codes or {}
        self.delays = delays or {}
        self.calls = []

    def _lookup(self, table, script, default):
        for needle, value in table.items():
            if needle in script:
                return value
        return default

    async def run(self, script, cwd, env, on_line=None):
        self.calls.append({"script": script, "cwd": cwd, "env": dict(env)})
        delay = self._lookup(self.delays, script, 0)
        if delay:
            await asyncio.sleep(delay)
        if on_line is not None:
            on_line(f"ran: {script.strip()}")
        return CommandResult(exit_code=self._lookup(self.exit_codes, script, 0))


def _execute(definition, runner, tmp_path, branch="main", changed=None, history=None):
    executor = PipelineExecutor(history=history, runner_factory=lambda agent, ws: runner)
    context = RunContext(
        workspace=str(tmp_path),
        branch=branch,
        changed_paths=changed if changed is not None else [],
    )
    return asyncio.run(executor.run(definition, context))


SIMPLE = """
name: simple
options:
  timestamps: false
stages:
  - name: Lint
    parallel:
      - name: Lint A
        steps: [lint-a]
      - name: Lint B
        steps: [lint-b]
  - name: Build
    steps: [build]
post:
  always:
    - echo: always
  success:
    - echo: ok
  failure:
    - echo: failed
  unstable:
    - echo: unstable
  aborted:
    - echo: aborted
"""


@pytest.fixture
def no_checkout():
    with patch(
        "cirunner.executor.pipeline_executor.repo_service.checkout",
        return_value="abc123def4567890",
    ) as mock_checkout:
        yield mock_checkout


# ---------------------------------------------------------------------------
# 1. Sequential + parallel semantics
# ---------------------------------------------------------------------------
class TestStageOrdering:

    def test_all_success(self, tmp_path):
        run = _execute(parse_pipeline(SIMPLE), ScriptedRunner(), tmp_path)
        assert run.status == BuildStatus.SUCCESS
        assert run.post_messages == ["always", "ok"]
        assert [s.status for s in run.stages] == [BuildStatus.SUCCESS, BuildStatus.SUCCESS]

    def test_parallel_children_all_started(self, tmp_path):
        runner = ScriptedRunner(delays={"lint-a": 0.05, "lint-b": 0.05})
        run = _execute(parse_pipeline(SIMPLE), runner, tmp_path)
        scripts = [c["script"] for c in runner.calls]
        assert scripts[:2] == ["lint-a", "lint-b"] or scripts[:2] == ["lint-b", "lint-a"]
        assert run.status == BuildStatus.SUCCESS

    def test_failing_child_fails_group_and_skips_later_stages(self, tmp_path):
        runner = ScriptedRunner(exit_codes={"lint-a": 1}, delays={"lint-b": 0.05})
        run = _execute(parse_pipeline(SIMPLE), runner, tmp_path)

        lint = run.find_stage("Lint")
        assert lint.status == BuildStatus.FAILURE
        # Sibling ran to completion, not cancelled
        assert run.find_stage("Lint B").status == BuildStatus.SUCCESS
        assert run.find_stage("Build").status == BuildStatus.SKIPPED
        assert "Lint" in run.find_stage("Build").skip_reason
        assert "build" not in [c["script"] for c in runner.calls]
        assert run.status == BuildStatus.FAILURE
        assert run.post_messages == ["always", "failed"]

    def test_group_status_is_worst_child(self, tmp_path):
        text = """
name: worst
options: {timestamps: false}
stages:
  - name: Test
    parallel:
      - name: Unit
        steps: [unit]
      - name: Report
        steps:
          - junit: results.xml
"""
        (tmp_path / "results.xml").write_text(
            '<testsuite><testcase classname="t" name="a"><failure/></testcase></testsuite>'
        )
        run = _execute(parse_pipeline(text), ScriptedRunner(), tmp_path)
        assert run.find_stage("Unit").status == BuildStatus.SUCCESS
        assert run.find_stage("Report").status == BuildStatus.UNSTABLE
        assert run.find_stage("Test").status == BuildStatus.UNSTABLE

    def test_failing_step_stops_stage_body(self, tmp_path):
        text = """
name: body
stages:
  - name: Build
    steps: [first, second, third]
"""
        runner = ScriptedRunner(exit_codes={"second": 2})
        run = _execute(parse_pipeline(text), runner, tmp_path)
        assert [c["script"] for c in runner.calls] == ["first", "second"]
        assert run.find_stage("Build").error == "script returned exit code 2"
        assert run.status == BuildStatus.FAILURE

    def test_fail_fast_cancels_siblings(self, tmp_path):
        text = """
name: ff
options: {timestamps: false}
stages:
  - name: Test
    fail_fast: true
    parallel:
      - name: Quick
        steps: [quick]
      - name: Slow
        steps: [slow]
"""
        runner = ScriptedRunner(exit_codes={"quick": 1}, delays={"slow": 5})
        run = _execute(parse_pipeline(text), runner, tmp_path)
        assert run.find_stage("Quick").status == BuildStatus.FAILURE
        assert run.find_stage("Slow").status == BuildStatus.ABORTED
        assert run.status == BuildStatus.FAILURE
        assert run.duration_seconds < 5

    def test_unexpected_error_becomes_stage_failure(self, tmp_path):
        class ExplodingRunner(ShellRunner):
            async def run(self, script, cwd, env, on_line=None):
                raise RuntimeError("boom")

        text = """
name: crash
stages:
  - name: Build
    steps: [build]
"""
        run = _execute(parse_pipeline(text), ExplodingRunner(), tmp_path)
        assert run.status == BuildStatus.FAILURE
        assert "boom" in run.find_stage("Build").error

    def test_stage_post_always_runs_after_unexpected_error(self, tmp_path):
        class ExplodingRunner(ShellRunner):
            async def run(self, script, cwd, env, on_line=None):
                raise RuntimeError("boom")

        text = """
name: crash-post
options: {timestamps: false}
stages:
  - name: Test
    steps: [pytest]
    post:
      always:
        - junit: results.xml
        - echo: published
"""
        (tmp_path / "results.xml").write_text('<testsuite><testcase classname="t" name="a"/></testsuite>')
        run = _execute(parse_pipeline(text), ExplodingRunner(), tmp_path)
        stage = run.find_stage("Test")
        assert stage.status == BuildStatus.FAILURE
        assert "boom" in stage.error
        assert stage.tests.total == 1
        assert "published" in stage.log
        assert run.status == BuildStatus.FAILURE

    def test_dir_scoping_and_escape(self, tmp_path):
        (tmp_path / "frontend").mkdir()
        text = """
name: dirs
stages:
  - name: Build
    steps:
      - sh: npm run build
        dir: frontend
      - sh: rm -rf everything
        dir: ../outside
"""
        runner = ScriptedRunner()
        run = _execute(parse_pipeline(text), runner, tmp_path)
        assert runner.calls[0]["cwd"] == str((tmp_path / "frontend").resolve())
        assert len(runner.calls) == 1
        assert "escapes the workspace" in run.find_stage("Build").error


# ---------------------------------------------------------------------------
# 2. Guards
# ---------------------------------------------------------------------------
GUARDED = """
name: guarded
stages:
  - name: Lint
    parallel:
      - name: Lint Frontend
        when:
          branch: main
          changeset: [frontend/**]
        steps: [lint-frontend]
      - name: Lint Python
        steps: [lint-python]
"""


class TestGuards:

    def test_runs_on_main(self, tmp_path):
        runner = ScriptedRunner()
        run = _execute(parse_pipeline(GUARDED), runner, tmp_path, branch="main")
        assert run.find_stage("Lint Frontend").status == BuildStatus.SUCCESS

    def test_runs_on_matching_changeset(self, tmp_path):
        runner = ScriptedRunner()
        run = _execute(parse_pipeline(GUARDED), runner, tmp_path,
                       branch="feature/x", changed=["frontend/src/App.tsx"])
        assert run.find_stage("Lint Frontend").status == BuildStatus.SUCCESS

    def test_skipped_otherwise_without_failing(self, tmp_path):
        runner = ScriptedRunner()
        run = _execute(parse_pipeline(GUARDED), runner, tmp_path,
                       branch="feature/x", changed=["openhands/server.py"])
        frontend = run.find_stage("Lint Frontend")
        assert frontend.status == BuildStatus.SKIPPED
        assert "when condition false" in frontend.skip_reason
        assert "lint-frontend" not in [c["script"] for c in runner.calls]
        assert run.find_stage("Lint").status == BuildStatus.SUCCESS
        assert run.status == BuildStatus.SUCCESS

    def test_all_children_skipped_group_is_skipped(self, tmp_path):
        text = """
name: allskip
stages:
  - name: UI
    parallel:
      - name: Build UI
        when: {changeset: [openhands-ui/**]}
        steps: [bun run build]
  - name: After
    steps: [after]
"""
        run = _execute(parse_pipeline(text), ScriptedRunner(), tmp_path)
        assert run.find_stage("UI").status == BuildStatus.SKIPPED
        assert run.find_stage("After").status == BuildStatus.SUCCESS
        assert run.status == BuildStatus.SUCCESS

    def test_required_group_fails_when_all_skipped(self, tmp_path):
        text = """
name: required
stages:
  - name: UI
    required: true
    parallel:
      - name: Build UI
        when: {changeset: [openhands-ui/**]}
        steps: [bun run build]
"""
        run = _execute(parse_pipeline(text), ScriptedRunner(), tmp_path)
        assert run.find_stage("UI").status == BuildStatus.FAILURE
        assert run.status == BuildStatus.FAILURE


# ---------------------------------------------------------------------------
# 3. Post actions, timeout, unstable handling
# ---------------------------------------------------------------------------
class TestPostAndTimeout:

    def test_always_runs_once_on_failure(self, tmp_path):
        run = _execute(parse_pipeline(SIMPLE), ScriptedRunner(exit_codes={"build": 1}), tmp_path)
        assert run.post_messages.count("always") == 1
        assert "ok" not in run.post_messages

    def test_timeout_aborts_and_still_runs_post(self, tmp_path):
        text = """
name: slow
options:
  timeout_minutes: 0.002
  timestamps: false
stages:
  - name: Slow
    steps: [sleepy]
  - name: Never
    steps: [never]
post:
  always:
    - echo: cleanup
  aborted:
    - echo: aborted
"""
        runner = ScriptedRunner(delays={"sleepy": 10})
        run = _execute(parse_pipeline(text), runner, tmp_path)
        assert run.status == BuildStatus.ABORTED
        assert run.find_stage("Slow").status == BuildStatus.ABORTED
        assert "Timeout" in run.find_stage("Slow").error
        assert run.find_stage("Never").status == BuildStatus.NOT_BUILT
        assert run.post_messages == ["cleanup", "aborted"]

    def test_failed_tests_with_zero_exit_are_unstable(self, tmp_path):
        text = """
name: tests
options: {timestamps: false, skip_stages_after_unstable: true}
stages:
  - name: Test
    steps:
      - sh: pytest --junitxml=test-results-unit.xml || true
    post:
      always:
        - junit: test-results-*.xml
  - name: Deploy
    steps: [deploy]
post:
  unstable:
    - echo: Pipeline is unstable!
"""
        (tmp_path / "test-results-unit.xml").write_text(
            "<testsuites><testsuite name='unit'>"
            "<testcase classname='tests.test_api' name='test_ok'/>"
            "<testcase classname='tests.test_api' name='test_bad'><failure message='x'/></testcase>"
            "</testsuite></testsuites>"
        )
        runner = ScriptedRunner()
        run = _execute(parse_pipeline(text), runner, tmp_path)

        test_stage = run.find_stage("Test")
        assert test_stage.status == BuildStatus.UNSTABLE
        assert test_stage.tests.total == 2
        assert test_stage.tests.failed_cases == ["tests.test_api.test_bad"]
        assert run.find_stage("Deploy").status == BuildStatus.SKIPPED
        assert run.status == BuildStatus.UNSTABLE
        assert run.post_messages == ["Pipeline is unstable!"]

    def test_unstable_does_not_skip_without_option(self, tmp_path):
        text = """
name: tests
stages:
  - name: Test
    steps:
      - junit: r.xml
  - name: Deploy
    steps: [deploy]
"""
        (tmp_path / "r.xml").write_text("<testsuite><testcase name='a'><error/></testcase></testsuite>")
        run = _execute(parse_pipeline(text), ScriptedRunner(), tmp_path)
        assert run.find_stage("Deploy").status == BuildStatus.SUCCESS
        assert run.status == BuildStatus.UNSTABLE

    def test_missing_junit_report(self, tmp_path):
        text = """
name: reports
stages:
  - name: Lenient
    steps:
      - junit: missing.xml
        allow_empty_results: true
  - name: Strict
    steps:
      - junit: missing.xml
"""
        run = _execute(parse_pipeline(text), ScriptedRunner(), tmp_path)
        assert run.find_stage("Lenient").status == BuildStatus.SUCCESS
        assert run.find_stage("Strict").status == BuildStatus.FAILURE

    def test_coverage_recorded(self, tmp_path):
        (tmp_path / "coverage-unit.xml").write_text(
            '<coverage line-rate="0.75" branch-rate="0.5" lines-valid="100" lines-covered="75"/>'
        )
        text = """
name: cov
stages:
  - name: Test
    steps:
      - coverage: coverage-*.xml
"""
        run = _execute(parse_pipeline(text), ScriptedRunner(), tmp_path)
        cov = run.find_stage("Test").coverage
        assert len(cov) == 1
        assert cov[0].line_rate == 0.75
        assert cov[0].lines_covered == 75

    def test_environment_visible_to_steps(self, tmp_path):
        runner = ScriptedRunner()
        run = _execute(load_default_pipeline().model_copy(update={"stages": parse_pipeline(SIMPLE).stages}),
                       runner, tmp_path)
        env = runner.calls[0]["env"]
        assert env["PYTHON_VERSION"] == "3.12"
        assert env["POETRY_HOME"] == f"{tmp_path}/.poetry"
        assert env["PATH"].startswith(f"{tmp_path}/.poetry/bin:")
        assert run.environment["NODE_VERSION"] == "22"

    def test_disabled_notify_is_not_recorded(self, tmp_path):
        text = """
name: notify
stages:
  - name: Build
    steps: [build]
post:
  failure:
    - notify: {to: team@example.com, subject: "Failed ${BRANCH_NAME}"}
      enabled: false
    - notify: {to: oncall@example.com, subject: "Broken ${BRANCH_NAME} #${BUILD_NUMBER}"}
"""
        run = _execute(parse_pipeline(text), ScriptedRunner(exit_codes={"build": 1}), tmp_path)
        assert run.notifications == [
            {"to": "oncall@example.com", "subject": "Broken main #1", "body": ""}
        ]


# ---------------------------------------------------------------------------
# 4. Bundled pipeline scenarios
# ---------------------------------------------------------------------------
class TestDefaultPipeline:

    def test_all_stages_succeed(self, tmp_path, no_checkout):
        runner = ScriptedRunner()
        run = _execute(load_default_pipeline(), runner, tmp_path)
        assert run.status == BuildStatus.SUCCESS
        assert run.commit == "abc123def4567890"
        assert "Pipeline succeeded!" in run.post_messages
        assert "Pipeline failed!" not in run.post_messages
        assert "Pipeline is unstable!" not in run.post_messages
        assert any("poetry build" in c["script"] for c in runner.calls)

    def test_lint_frontend_failure_skips_build(self, tmp_path, no_checkout):
        runner = ScriptedRunner(exit_codes={"npm run lint": 1})
        run = _execute(load_default_pipeline(), runner, tmp_path)

        assert run.find_stage("Lint Frontend").status == BuildStatus.FAILURE
        assert run.find_stage("Lint Python").status == BuildStatus.SUCCESS
        assert run.find_stage("Lint Enterprise Python").status == BuildStatus.SUCCESS
        assert run.find_stage("Lint").status == BuildStatus.FAILURE
        assert run.find_stage("Build").status == BuildStatus.SKIPPED
        assert run.find_stage("Build Backend").status == BuildStatus.SKIPPED
        assert run.find_stage("Test").status == BuildStatus.SKIPPED
        assert run.status == BuildStatus.FAILURE
        assert run.post_messages == ["Pipeline failed!"]
        # The email hook is present but disabled
        assert run.notifications == []

    def test_feature_branch_skips_frontend_lint_and_ui_build(self, tmp_path, no_checkout):
        runner = ScriptedRunner()
        run = _execute(load_default_pipeline(), runner, tmp_path,
                       branch="feature/api", changed=["openhands/server/app.py"])
        assert run.find_stage("Lint Frontend").status == BuildStatus.SKIPPED
        assert run.find_stage("Build UI Components").status == BuildStatus.SKIPPED
        assert run.find_stage("Build Frontend").status == BuildStatus.SUCCESS
        assert run.status == BuildStatus.SUCCESS

    def test_ui_build_runs_when_ui_changes(self, tmp_path, no_checkout):
        runner = ScriptedRunner()
        run = _execute(load_default_pipeline(), runner, tmp_path,
                       branch="feature/ui", changed=["openhands-ui/components/Button.tsx"])
        assert run.find_stage("Build UI Components").status == BuildStatus.SUCCESS
        assert run.find_stage("Lint Frontend").status == BuildStatus.SKIPPED

    def test_checkout_failure_fails_run(self, tmp_path):
        # tmp_path is not a git repository and no remote is configured
        run = _execute(load_default_pipeline(), ScriptedRunner(), tmp_path)
        assert run.find_stage("Checkout").status == BuildStatus.FAILURE
        assert run.find_stage("Setup").status == BuildStatus.SKIPPED
        assert run.status == BuildStatus.FAILURE

    def test_failed_unit_tests_make_run_unstable(self, tmp_path, no_checkout):
        (tmp_path / "test-results-unit.xml").write_text(
            "<testsuite><testcase classname='tests.unit' name='test_flaky'><failure/></testcase></testsuite>"
        )
        run = _execute(load_default_pipeline(), ScriptedRunner(), tmp_path)
        assert run.find_stage("Python Unit Tests").status == BuildStatus.UNSTABLE
        assert run.find_stage("Runtime Tests").status == BuildStatus.SUCCESS
        assert run.status == BuildStatus.UNSTABLE
        assert run.post_messages == ["Pipeline is unstable!"]


# ---------------------------------------------------------------------------
# 5. History integration
# ---------------------------------------------------------------------------
class TestHistory:

    def test_runs_are_saved_and_numbered(self, tmp_path):
        history = RunHistory("simple", history_dir=str(tmp_path / "history"))
        ws = tmp_path / "ws"
        ws.mkdir()
        first = _execute(parse_pipeline(SIMPLE), ScriptedRunner(), ws, history=history)
        second = _execute(parse_pipeline(SIMPLE), ScriptedRunner(), ws, history=history)
        assert (first.build_number, second.build_number) == (1, 2)
        stored = history.get_run(2)
        assert stored.status == BuildStatus.SUCCESS
        assert stored.find_stage("Lint A").status == BuildStatus.SUCCESS
