"""
Environment Bindings
====================
Computes the read-only environment every stage sees.

Bindings are resolved once, at run start, in declaration order. A value
may reference ``${NAME}`` or ``$NAME``; names resolve against the run
variables (WORKSPACE, BRANCH_NAME, ...), then earlier bindings, then the
process environment. Unknown names expand to the empty string.
"""
import os
import re
import logging
from types import MappingProxyType
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_VAR_REF = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


def expand(value: str, scope: Mapping[str, str]) -> str:
    """Expand ``$NAME`` / ``${NAME}`` references against ``scope``."""
    def _sub(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        return scope.get(name, "")
    return _VAR_REF.sub(_sub, value)


def resolve_environment(
    bindings: Mapping[str, str],
    run_vars: Mapping[str, str],
    base_env: Optional[Mapping[str, str]] = None,
) -> Mapping[str, str]:
    """
    Build the full stage environment.

    Parameters
    ----------
    bindings : Mapping[str, str]
        The pipeline's ``environment`` block, in declaration order.
    run_vars : Mapping[str, str]
        Per-run variables (WORKSPACE, BRANCH_NAME, BUILD_NUMBER, ...).
    base_env : Mapping[str, str] | None
        Process environment to inherit. Defaults to ``os.environ``.

    Returns
    -------
    Mapping[str, str]
        Read-only mapping: inherited env + run vars + resolved bindings.
    """
    env: Dict[str, str] = dict(os.environ if base_env is None else base_env)
    env.update(run_vars)
    env["CI"] = "true"

    for name, raw in bindings.items():
        env[name] = expand(raw, env)
        logger.debug("env %s=%s", name, env[name])

    return MappingProxyType(env)


def declared_subset(env: Mapping[str, str], bindings: Mapping[str, str], run_vars: Mapping[str, str]) -> Dict[str, str]:
    """The part of the environment worth persisting with a run (no inherited secrets)."""
    keys = list(run_vars) + [k for k in bindings if k not in run_vars]
    return {k: env[k] for k in keys if k in env}
