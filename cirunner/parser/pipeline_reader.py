"""
Pipeline Reader
===============
Loads a pipeline definition from YAML and validates it into a
PipelineDefinition.

Discovery (priority order):
    1. An explicit path (CLI --pipeline / API)
    2. CIRUNNER_PIPELINE environment variable
    3. A pipeline file in the workspace root (see _PIPELINE_SIGNALS)
    4. The bundled default pipeline (cirunner/pipelines/default.yml)

Step shorthand:
    Steps may be written with an explicit ``kind`` key, or with the kind
    itself as the key, e.g.

        - sh: poetry build
          dir: enterprise
        - junit: test-results-*.xml
          allow_empty_results: true

Deterministic:
    Same file → same definition, always.
"""
import os
import logging
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from cirunner.core.config import PIPELINE_FILE
from cirunner.core.constants import STEP_KINDS
from cirunner.core.exceptions import PipelineDefinitionError
from cirunner.models.pipeline import PipelineDefinition

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "pipelines",
    "default.yml",
)

_PIPELINE_SIGNALS = ["cirunner.yml", "cirunner.yaml", ".cirunner.yml", ".cirunner.yaml"]

# kind → field the shorthand value is assigned to
_SHORTHAND_FIELD = {
    "sh": "script",
    "echo": "message",
    "junit": "results",
    "coverage": "reports",
}


# ---------------------------------------------------------------------------
# Step normalisation
# ---------------------------------------------------------------------------
def _normalize_step(raw: Any) -> Any:
    """Rewrite shorthand steps into the explicit ``kind`` form."""
    if isinstance(raw, str):
        # A bare string is a shell step
        return {"kind": "sh", "script": raw}
    if not isinstance(raw, dict) or "kind" in raw:
        return raw

    kinds = [k for k in raw if k in STEP_KINDS]
    if len(kinds) != 1:
        return raw  # let validation report it

    kind = kinds[0]
    value = raw[kind]
    step = {k: v for k, v in raw.items() if k != kind}
    step["kind"] = kind

    if kind in _SHORTHAND_FIELD:
        step[_SHORTHAND_FIELD[kind]] = value
    elif isinstance(value, dict):
        step.update(value)
    return step


def _normalize_post(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    return {
        cond: [_normalize_step(s) for s in steps] if isinstance(steps, list) else steps
        for cond, steps in raw.items()
    }


def _normalize_stage(raw: Any) -> Any:
    if not isinstance(raw, dict):
        return raw
    stage = dict(raw)
    if isinstance(stage.get("steps"), list):
        stage["steps"] = [_normalize_step(s) for s in stage["steps"]]
    if isinstance(stage.get("parallel"), list):
        stage["parallel"] = [_normalize_stage(c) for c in stage["parallel"]]
    if "post" in stage:
        stage["post"] = _normalize_post(stage["post"])
    return stage


def _normalize_document(data: dict) -> dict:
    doc = dict(data)
    if isinstance(doc.get("stages"), list):
        doc["stages"] = [_normalize_stage(s) for s in doc["stages"]]
    if "post" in doc:
        doc["post"] = _normalize_post(doc["post"])
    env = doc.get("environment")
    if isinstance(env, dict):
        # YAML turns 3.12 / 22 into numbers; bindings are strings
        doc["environment"] = {str(k): "" if v is None else str(v) for k, v in env.items()}
    return doc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_pipeline(content: str, source: str = "<string>") -> PipelineDefinition:
    """
    Parse YAML text into a PipelineDefinition.

    Raises
    ------
    PipelineDefinitionError
        On YAML syntax errors, a non-mapping document, or validation failure.
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"Invalid YAML: {e}", source) from e

    if not isinstance(data, dict):
        raise PipelineDefinitionError("Pipeline document must be a mapping", source)

    try:
        return PipelineDefinition.model_validate(_normalize_document(data))
    except ValidationError as e:
        raise PipelineDefinitionError(str(e), source) from e


def load_pipeline(path: str) -> PipelineDefinition:
    """Read and parse a pipeline file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise PipelineDefinitionError(f"Could not read pipeline file: {e}", path) from e

    definition = parse_pipeline(content, source=path)
    logger.info(
        "Loaded pipeline '%s' from %s (%d top-level stages)",
        definition.name, path, len(definition.stages),
    )
    return definition


def discover_pipeline_file(workspace_path: str, explicit: Optional[str] = None) -> str:
    """Resolve which pipeline file a run should use."""
    if explicit:
        return explicit
    if PIPELINE_FILE:
        return PIPELINE_FILE
    for name in _PIPELINE_SIGNALS:
        candidate = os.path.join(workspace_path, name)
        if os.path.isfile(candidate):
            return candidate
    return DEFAULT_PIPELINE_PATH


def load_default_pipeline() -> PipelineDefinition:
    return load_pipeline(DEFAULT_PIPELINE_PATH)
