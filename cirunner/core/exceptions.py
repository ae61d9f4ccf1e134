"""
Exceptions
==========
Errors raised outside of stage execution. Failures *inside* a stage never
raise; they are recorded on the StageResult instead.
"""


class CIRunnerError(Exception):
    """Base class for runner errors."""


class PipelineDefinitionError(CIRunnerError, ValueError):
    """The pipeline file could not be read, parsed or validated."""

    def __init__(self, message: str, source: str = "") -> None:
        self.source = source
        prefix = f"{source}: " if source else ""
        super().__init__(f"{prefix}{message}")


class WorkspaceError(CIRunnerError, RuntimeError):
    """A workspace operation (checkout, cleanup, directory scoping) failed."""


class RunNotFoundError(CIRunnerError, LookupError):
    """No stored run matches the requested build number."""
