"""
Stage Guards
============
Evaluates a stage's ``when`` block against the run's branch and changeset.

A stage without a guard always runs. A stage whose guard is false is
skipped, never failed.
"""
import fnmatch
from typing import List, Optional, Sequence, Tuple

from cirunner.models.pipeline import When
from cirunner.utils.path_utils import matches_glob


def branch_matches(branch: str, pattern: str) -> bool:
    """Jenkins ``branch`` condition: glob over the branch name."""
    return fnmatch.fnmatchcase(branch, pattern)


def changeset_matches(changed_paths: Optional[Sequence[str]], patterns: Sequence[str]) -> bool:
    """True if any changed path matches any pattern. Unknown changeset → False."""
    if not changed_paths:
        return False
    return any(
        matches_glob(path, pattern)
        for path in changed_paths
        for pattern in patterns
    )


def evaluate_guard(
    when: Optional[When],
    branch: str,
    changed_paths: Optional[Sequence[str]],
) -> Tuple[bool, str]:
    """
    Decide whether a guarded stage runs.

    Returns
    -------
    tuple[bool, str]
        (should_run, reason). The reason explains a skip and is empty
        when the stage runs.
    """
    if when is None:
        return True, ""

    outcomes: List[Tuple[bool, str]] = []
    if when.branch is not None:
        outcomes.append((branch_matches(branch, when.branch), f"branch '{branch}' != '{when.branch}'"))
    if when.changeset:
        outcomes.append((
            changeset_matches(changed_paths, when.changeset),
            f"no changes matching {', '.join(when.changeset)}",
        ))

    if when.mode == "all":
        should_run = all(ok for ok, _ in outcomes)
    else:
        should_run = any(ok for ok, _ in outcomes)

    if should_run:
        return True, ""
    reasons = [reason for ok, reason in outcomes if not ok]
    joiner = " and " if when.mode == "any" else "; "
    return False, "when condition false: " + joiner.join(reasons)
