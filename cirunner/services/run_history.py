"""
Run History
===========
Persists finished runs as JSON and applies the build discarder.

Layout:
    <history_dir>/<pipeline name>/<build number>.json

Retention:
    After every write only the newest ``retention`` runs are kept
    (options.history_retention_count).
"""
import os
import re
import logging
import threading
from typing import List, Optional

from cirunner.core.config import HISTORY_DIR
from cirunner.core.exceptions import RunNotFoundError
from cirunner.models.run_result import PipelineRun

logger = logging.getLogger(__name__)

_RUN_FILE = re.compile(r"^(\d+)\.json$")
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class RunHistory:
    """
    File-backed store of PipelineRun records for one pipeline.

    Usage:
        history = RunHistory("openhands")
        n = history.next_build_number()
        ...
        history.save(run, retention=10)
    """

    def __init__(self, pipeline_name: str, history_dir: str = HISTORY_DIR) -> None:
        self.pipeline_name = pipeline_name
        self.directory = os.path.join(history_dir, _UNSAFE.sub("_", pipeline_name))
        self._lock = threading.Lock()
        self._reserved = 0

    def _build_numbers(self) -> List[int]:
        if not os.path.isdir(self.directory):
            return []
        numbers = []
        for fname in os.listdir(self.directory):
            match = _RUN_FILE.match(fname)
            if match:
                numbers.append(int(match.group(1)))
        return sorted(numbers)

    def _path(self, build_number: int) -> str:
        return os.path.join(self.directory, f"{build_number}.json")

    def next_build_number(self) -> int:
        """Reserve the next build number (monotonic even across discards)."""
        with self._lock:
            numbers = self._build_numbers()
            n = max([self._reserved, *numbers], default=0) + 1
            self._reserved = n
            return n

    def save(self, run: PipelineRun, retention: Optional[int] = None) -> str:
        os.makedirs(self.directory, exist_ok=True)
        path = self._path(run.build_number)
        with self._lock:
            with open(path, "w", encoding="utf-8") as f:
                f.write(run.model_dump_json(indent=2))
            logger.info("Saved run #%d (%s) to %s", run.build_number, run.status.value, path)
            if retention:
                self._discard_old(retention)
        return path

    def _discard_old(self, retention: int) -> None:
        numbers = self._build_numbers()
        for n in numbers[:-retention] if len(numbers) > retention else []:
            try:
                os.remove(self._path(n))
                logger.info("Discarded run #%d (keeping %d)", n, retention)
            except OSError as e:
                logger.warning("Could not discard run #%d: %s", n, e)

    def get_run(self, build_number: int) -> PipelineRun:
        path = self._path(build_number)
        if not os.path.isfile(path):
            raise RunNotFoundError(f"No run #{build_number} for pipeline '{self.pipeline_name}'")
        with open(path, "r", encoding="utf-8") as f:
            return PipelineRun.model_validate_json(f.read())

    def list_runs(self) -> List[PipelineRun]:
        """Stored runs, newest first. Unreadable files are skipped with a warning."""
        runs = []
        for n in reversed(self._build_numbers()):
            try:
                runs.append(self.get_run(n))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable run #%d: %s", n, e)
        return runs

    def last_commit(self) -> str:
        """Commit of the newest stored run that recorded one."""
        for run in self.list_runs():
            if run.commit:
                return run.commit
        return ""
