"""
Shell Runners
=============
Run a single ``sh`` step body and report its exit code and output.

Two agents:
    - LocalShellRunner   — subprocess on the host (agent kind "any")
    - DockerShellRunner  — ephemeral container per step (agent kind "docker")

BOUNDARY RULES:
    - Runners ONLY execute. They never decide stage status.
    - Runners never raise for a failing command; a non-zero exit is data.
    - Infrastructure problems (missing directory, docker unavailable) come
      back as exit_code -1 with ``error`` set.
    - Cancellation (pipeline timeout, fail-fast) kills the process or
      removes the container, then propagates CancelledError.

Scripts run as ``/bin/sh -xe -c <script>``: echo each command, stop on
the first failing one.
"""
import os
import time
import codecs
import signal
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound

from cirunner.core.config import DOCKER_CPU_COUNT, DOCKER_IMAGE, DOCKER_MEMORY_LIMIT
from cirunner.core.constants import CONTAINER_WORKSPACE

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

SHELL = ["/bin/sh", "-xe", "-c"]

READ_CHUNK_BYTES = 64 * 1024


@dataclass
class CommandResult:
    """
    Outcome of one shell invocation.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success). -1 when the command never ran.
    output : list[str]
        Combined stdout + stderr, one entry per line.
    duration_seconds : float
        Wall clock duration.
    error : str | None
        Infrastructure failure message (not command failures).
    """
    exit_code: int = -1
    output: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(lines: List[str],
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """First and last N lines of a log, with an omission marker in between."""
    total = len(lines)
    if total <= head + tail:
        return "\n".join(lines)
    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"... ({omitted} lines omitted) ..."]
        + lines[-tail:]
    )


class LineSplitter:
    """
    Turns a byte stream into text lines. Multi-byte characters split
    across chunks are decoded once complete; lines have no length limit.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [tail.rstrip("\r")] if tail else []


def _emit(lines: List[str], result: "CommandResult", on_line: Optional[LineCallback]) -> None:
    for line in lines:
        result.output.append(line)
        if on_line is not None:
            on_line(line)


class ShellRunner:
    """Interface shared by the local and docker agents."""

    async def run(
        self,
        script: str,
        cwd: str,
        env: Mapping[str, str],
        on_line: Optional[LineCallback] = None,
    ) -> CommandResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Local agent
# ---------------------------------------------------------------------------
class LocalShellRunner(ShellRunner):

    async def run(self, script, cwd, env, on_line=None):
        result = CommandResult()
        start = time.monotonic()

        if not os.path.isdir(cwd):
            result.error = f"Working directory does not exist: {cwd}"
            logger.error(result.error)
            return result

        try:
            proc = await asyncio.create_subprocess_exec(
                *SHELL, script,
                cwd=cwd,
                env=dict(env),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            result.error = f"Could not start shell: {e}"
            logger.error(result.error)
            return result

        splitter = LineSplitter()
        finished = False
        try:
            while True:
                chunk = await proc.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                _emit(splitter.feed(chunk), result, on_line)
            _emit(splitter.flush(), result, on_line)
            result.exit_code = await proc.wait()
            finished = True
        except asyncio.CancelledError:
            logger.warning("Killing shell (pid %d) after cancellation", proc.pid)
            raise
        finally:
            if not finished:
                _kill_process_group(proc)
                await proc.wait()

        result.duration_seconds = round(time.monotonic() - start, 3)
        return result


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError:
        logger.warning("killpg failed, killing pid %d only", proc.pid, exc_info=True)
        try:
            proc.kill()
        except ProcessLookupError:
            pass


# ---------------------------------------------------------------------------
# Docker agent
# ---------------------------------------------------------------------------
class DockerShellRunner(ShellRunner):
    """
    Runs each step in an ephemeral container with the workspace mounted
    at /workspace. Host workspace paths inside environment values are
    rewritten to the container mount point.
    """

    def __init__(self, workspace: str, image: Optional[str] = None, client=None) -> None:
        self.workspace = os.path.abspath(workspace)
        self.image = image or DOCKER_IMAGE
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _container_path(self, host_path: str) -> str:
        rel = os.path.relpath(os.path.abspath(host_path), self.workspace)
        if rel == ".":
            return CONTAINER_WORKSPACE
        return f"{CONTAINER_WORKSPACE}/{rel.replace(os.sep, '/')}"

    def _translate_env(self, env: Mapping[str, str]) -> Dict[str, str]:
        translated = {}
        for key, value in env.items():
            if key == "PATH":
                # Host PATH is meaningless inside the image; keep workspace entries only
                entries = [p for p in value.split(os.pathsep) if p.startswith(self.workspace)]
                entries = [p.replace(self.workspace, CONTAINER_WORKSPACE, 1) for p in entries]
                entries += ["/usr/local/sbin", "/usr/local/bin", "/usr/sbin", "/usr/bin", "/sbin", "/bin"]
                translated[key] = ":".join(entries)
            else:
                translated[key] = value.replace(self.workspace, CONTAINER_WORKSPACE)
        return translated

    async def run(self, script, cwd, env, on_line=None):
        holder: Dict[str, object] = {}
        cancelled = threading.Event()
        try:
            return await asyncio.to_thread(self._run_blocking, script, cwd, env, on_line, holder, cancelled)
        except asyncio.CancelledError:
            # A container still being created is removed by the worker once it exists
            cancelled.set()
            container = holder.get("container")
            if container is not None:
                await asyncio.to_thread(_remove_container, container)
            raise

    def _run_blocking(self, script, cwd, env, on_line, holder, cancelled) -> CommandResult:
        result = CommandResult()
        start = time.monotonic()
        container = None
        try:
            client = self._get_client()
            workdir = self._container_path(cwd)

            logger.info("Starting container | image=%s | workdir=%s", self.image, workdir)

            container = client.containers.run(
                image=self.image,
                command=[*SHELL, script],
                volumes={self.workspace: {"bind": CONTAINER_WORKSPACE, "mode": "rw"}},
                environment=self._translate_env(env),
                working_dir=workdir,
                mem_limit=DOCKER_MEMORY_LIMIT,
                nano_cpus=DOCKER_CPU_COUNT * 1_000_000_000,
                labels={"project": "cirunner", "role": "agent"},
                detach=True,
            )
            holder["container"] = container
            if cancelled.is_set():
                logger.warning("Step cancelled while container %s was starting", container.short_id)
                return result

            splitter = LineSplitter()
            for chunk in container.logs(stdout=True, stderr=True, stream=True, follow=True):
                if cancelled.is_set():
                    return result
                _emit(splitter.feed(chunk), result, on_line)
            _emit(splitter.flush(), result, on_line)

            wait_result = container.wait()
            result.exit_code = wait_result.get("StatusCode", -1)

        except ImageNotFound:
            result.error = f"Docker image '{self.image}' not found"
            logger.error(result.error)
        except APIError as e:
            result.error = f"Docker API error: {e}"
            logger.error(result.error)
        except DockerException as e:
            result.error = f"Docker unavailable: {e}"
            logger.error(result.error)
        finally:
            if container is not None:
                _remove_container(container)

        result.duration_seconds = round(time.monotonic() - start, 3)
        return result


def _remove_container(container) -> None:
    try:
        container.remove(force=True)
        logger.info("Container %s destroyed", container.short_id)
    except DockerException:
        logger.warning("Failed to remove container", exc_info=True)
