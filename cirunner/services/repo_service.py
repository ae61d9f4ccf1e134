"""
Repo Service
============
Git operations on the build workspace: checkout, revision lookup,
changesets and remote heads for SCM polling.

Philosophy:
    - Clone ONCE into the workspace, then fetch + reset on later runs.
    - A workspace without a configured remote is used as-is.
    - Read-only queries (head, changeset) never raise; they log and
      return an empty value.
"""
import os
import shutil
import logging
import subprocess
from typing import List, Optional, Tuple

from cirunner.core.config import WORKSPACE_ROOT
from cirunner.core.exceptions import WorkspaceError
from cirunner.utils.path_utils import matches_glob, normalize_path

logger = logging.getLogger(__name__)


def get_repo_name(repo_url: str) -> str:
    """Extract repository name from URL."""
    # Handle git@github.com:org/repo.git or https://github.com/org/repo
    name = repo_url.rstrip("/").split("/")[-1].split(":")[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name


def resolve_workspace(explicit: str = "", repo_url: str = "", workspace_root: str = WORKSPACE_ROOT) -> Tuple[str, bool]:
    """
    Pick the workspace for a run.

    Returns
    -------
    tuple[str, bool]
        (absolute path, managed). Only a runner-owned clone under
        ``workspace_root`` is managed, i.e. may be wiped by ``clean_ws``.
    """
    if explicit:
        path = os.path.abspath(explicit)
    elif repo_url:
        path = os.path.join(os.path.abspath(workspace_root), get_repo_name(repo_url))
    else:
        path = os.getcwd()
    root = os.path.abspath(workspace_root)
    managed = path.startswith(root + os.sep)
    return path, managed


def _git(args: List[str], cwd: Optional[str] = None, timeout: int = 300) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def is_git_repository(workspace_path: str) -> bool:
    return os.path.isdir(os.path.join(workspace_path, ".git"))


def checkout(workspace_path: str, branch: str, repo_url: str = "") -> str:
    """
    Bring the workspace to the tip of ``branch``.

    Clones when the workspace has no repository yet, otherwise fetches and
    hard-resets. Without ``repo_url`` an existing repository is left alone.

    Returns
    -------
    str
        The checked-out commit SHA ("" if it cannot be determined).

    Raises
    ------
    WorkspaceError
        If git fails or there is nothing to check out.
    """
    try:
        if not is_git_repository(workspace_path):
            if not repo_url:
                raise WorkspaceError(
                    f"{workspace_path} is not a git repository and no repository URL is configured"
                )
            os.makedirs(workspace_path, exist_ok=True)
            logger.info("Cloning %s (%s) into %s", repo_url, branch, workspace_path)
            _git(["clone", "--branch", branch, repo_url, "."], cwd=workspace_path)
        elif repo_url:
            logger.info("Fetching %s from origin", branch)
            _git(["fetch", "origin", branch], cwd=workspace_path)
            _git(["checkout", "-B", branch, f"origin/{branch}"], cwd=workspace_path)
            _git(["reset", "--hard", f"origin/{branch}"], cwd=workspace_path)
        else:
            logger.info("Using existing checkout in %s", workspace_path)
    except subprocess.CalledProcessError as e:
        raise WorkspaceError(f"git {' '.join(e.cmd[1:3])} failed: {e.stderr.strip()}") from e
    except (OSError, subprocess.TimeoutExpired) as e:
        raise WorkspaceError(f"git failed: {e}") from e

    return head_commit(workspace_path)


def head_commit(workspace_path: str) -> str:
    """SHA of HEAD, or "" when it cannot be determined."""
    if not is_git_repository(workspace_path):
        return ""
    try:
        return _git(["rev-parse", "HEAD"], cwd=workspace_path, timeout=30).stdout.strip()
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
        logger.warning("Could not resolve HEAD in %s: %s", workspace_path, e)
        return ""


def changed_paths(workspace_path: str, since_commit: str) -> List[str]:
    """
    Paths changed between ``since_commit`` and HEAD.

    No previous commit (first build) or a git failure yields [].
    """
    if not since_commit or not is_git_repository(workspace_path):
        return []
    try:
        out = _git(["diff", "--name-only", f"{since_commit}..HEAD"], cwd=workspace_path, timeout=60).stdout
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
        logger.warning("Could not compute changeset since %s: %s", since_commit[:12], e)
        return []
    return [normalize_path(line) for line in out.splitlines() if line.strip()]


def remote_head(repo_url: str, branch: str) -> str:
    """SHA the remote branch points at, or "" on failure."""
    try:
        out = _git(["ls-remote", repo_url, f"refs/heads/{branch}"], timeout=60).stdout
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
        logger.warning("ls-remote %s %s failed: %s", repo_url, branch, e)
        return ""
    for line in out.splitlines():
        parts = line.split()
        if len(parts) == 2:
            return parts[0]
    return ""


def clean_workspace(workspace_path: str, exclude: Optional[List[str]] = None) -> int:
    """
    Delete everything inside the workspace except paths matching ``exclude``.

    Returns
    -------
    int
        Number of top-level entries removed.
    """
    root = os.path.realpath(workspace_path)
    if root in ("/", os.path.realpath(os.path.expanduser("~"))):
        raise WorkspaceError(f"Refusing to clean {root}")
    if not os.path.isdir(root):
        return 0

    removed = 0
    for entry in sorted(os.listdir(root)):
        if any(matches_glob(entry, pattern) for pattern in exclude or []):
            continue
        full = os.path.join(root, entry)
        if os.path.isdir(full) and not os.path.islink(full):
            shutil.rmtree(full)
        else:
            os.remove(full)
        removed += 1
    logger.info("Cleaned workspace %s (%d entries removed)", root, removed)
    return removed
