"""Path helpers shared by guards, publishers and runners."""
import os
import fnmatch


def normalize_path(path: str) -> str:
    """Workspace-relative, forward slashes, no leading './'."""
    p = path.replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def matches_glob(path: str, pattern: str) -> bool:
    """
    Match a path against an Ant/Jenkins-style glob.

    ``*`` in fnmatch already crosses '/', so ``frontend/**`` matches every
    path below ``frontend/``. A bare ``dir/**`` also matches ``dir`` itself.
    """
    path = normalize_path(path)
    pattern = normalize_path(pattern)
    if fnmatch.fnmatchcase(path, pattern):
        return True
    if pattern.endswith("/**") and path == pattern[:-3]:
        return True
    return False


def resolve_in_workspace(workspace: str, relative: str) -> str:
    """
    Join a relative directory onto the workspace, refusing to escape it.

    Raises
    ------
    ValueError
        If the resolved path lies outside the workspace.
    """
    root = os.path.realpath(workspace)
    target = os.path.realpath(os.path.join(root, relative or ""))
    if target != root and not target.startswith(root + os.sep):
        raise ValueError(f"Directory '{relative}' escapes the workspace")
    return target
