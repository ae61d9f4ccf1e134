"""
Run Result Models
=================
Pydantic models tracking one pipeline run, filled in by the executor and
persisted by the run history.

BuildStatus ordering (worst wins):
    success < unstable < failure < not_built < aborted

``skipped`` and ``running`` sit outside the ordering: a skipped stage
never worsens the aggregate on its own.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel


class BuildStatus(str, Enum):
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    NOT_BUILT = "not_built"
    ABORTED = "aborted"
    SKIPPED = "skipped"
    RUNNING = "running"

    @property
    def rank(self) -> int:
        return _RANK.get(self, -1)


_RANK: Dict[BuildStatus, int] = {
    BuildStatus.SUCCESS: 0,
    BuildStatus.UNSTABLE: 1,
    BuildStatus.FAILURE: 2,
    BuildStatus.NOT_BUILT: 3,
    BuildStatus.ABORTED: 4,
}


def worst(statuses: Iterable[BuildStatus], default: BuildStatus = BuildStatus.SUCCESS) -> BuildStatus:
    """
    Fold statuses to the worst ranked one.

    ``skipped`` and ``not_built`` entries are ignored so that skipping
    a stage cannot flip the aggregate by itself. Returns ``default`` when
    nothing ranked remains.
    """
    result: Optional[BuildStatus] = None
    for status in statuses:
        if status in (BuildStatus.SKIPPED, BuildStatus.NOT_BUILT, BuildStatus.RUNNING):
            continue
        if result is None or status.rank > result.rank:
            result = status
    return result if result is not None else default


class JUnitSummary(BaseModel):
    """Totals across every JUnit file a publisher step matched."""
    files: List[str] = []
    total: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0
    failed_cases: List[str] = []

    @property
    def failed(self) -> int:
        return self.failures + self.errors

    def merge(self, other: "JUnitSummary") -> "JUnitSummary":
        return JUnitSummary(
            files=self.files + other.files,
            total=self.total + other.total,
            failures=self.failures + other.failures,
            errors=self.errors + other.errors,
            skipped=self.skipped + other.skipped,
            failed_cases=self.failed_cases + other.failed_cases,
        )


class CoverageReport(BaseModel):
    adapter: str = "cobertura"
    file: str
    line_rate: float = 0.0
    branch_rate: Optional[float] = None
    lines_valid: Optional[int] = None
    lines_covered: Optional[int] = None


class StageResult(BaseModel):
    name: str
    path: str                                # "Test/Python Unit Tests"
    status: BuildStatus = BuildStatus.NOT_BUILT
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    log: List[str] = []
    skip_reason: str = ""
    error: str = ""
    children: List["StageResult"] = []
    tests: Optional[JUnitSummary] = None
    coverage: List[CoverageReport] = []

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()


class PipelineRun(BaseModel):
    run_id: str
    build_number: int
    pipeline: str
    branch: str
    commit: str = ""
    changed_paths: List[str] = []
    environment: Dict[str, str] = {}
    status: BuildStatus = BuildStatus.RUNNING
    stages: List[StageResult] = []
    post_log: List[str] = []
    post_messages: List[str] = []
    notifications: List[Dict[str, str]] = []
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    def find_stage(self, name: str) -> Optional[StageResult]:
        """Look a stage up by name or by its slash-separated path."""
        for top in self.stages:
            for result in top.walk():
                if result.name == name or result.path == name:
                    return result
        return None

    def summary(self) -> dict:
        return {
            "build_number": self.build_number,
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "branch": self.branch,
            "commit": self.commit,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_seconds": self.duration_seconds,
        }
