"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    CIRUNNER_HOME          — Base directory for runner state (default: ~/.cirunner)
    CIRUNNER_WORKSPACE     — Workspace the pipeline runs in (default: a runner-owned
                             clone when CIRUNNER_REPO_URL is set, else the current directory)
    CIRUNNER_PIPELINE      — Pipeline definition file (default: bundled pipeline)
    CIRUNNER_HISTORY_DIR   — Where finished runs are stored (default: $CIRUNNER_HOME/history)
    CIRUNNER_REPO_URL      — Remote repository for checkout and SCM polling
    CIRUNNER_BRANCH        — Branch to build when none is given (default: main)
    CIRUNNER_DOCKER_IMAGE  — Image used by docker agents without an explicit image
    CIRUNNER_LOG_LEVEL     — Root log level (default: INFO)
    CIRUNNER_LOG_DIR       — Directory for the dated log file (default: logs)
    CIRUNNER_API_HOST      — Bind host for `cirunner serve` (default: 127.0.0.1)
    CIRUNNER_API_PORT      — Bind port for `cirunner serve` (default: 8000)

Timeouts:
    The whole-run budget lives in the pipeline definition (options.timeout_minutes).
    DEFAULT_TIMEOUT_MINUTES only applies to definitions that omit it.
"""
import os
from dotenv import load_dotenv

load_dotenv()

CIRUNNER_HOME = os.path.abspath(
    os.path.expanduser(os.getenv("CIRUNNER_HOME", "~/.cirunner"))
)
WORKSPACE = os.getenv("CIRUNNER_WORKSPACE", "")
# Clones made by the runner itself live here (and only these get cleaned)
WORKSPACE_ROOT = os.path.join(CIRUNNER_HOME, "workspace")
PIPELINE_FILE = os.getenv("CIRUNNER_PIPELINE", "")
HISTORY_DIR = os.getenv("CIRUNNER_HISTORY_DIR", os.path.join(CIRUNNER_HOME, "history"))
REPO_URL = os.getenv("CIRUNNER_REPO_URL", "")
DEFAULT_BRANCH = os.getenv("CIRUNNER_BRANCH", "main")
DOCKER_IMAGE = os.getenv("CIRUNNER_DOCKER_IMAGE", "python:3.12-slim")

LOG_LEVEL = os.getenv("CIRUNNER_LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("CIRUNNER_LOG_DIR", "logs")

API_HOST = os.getenv("CIRUNNER_API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("CIRUNNER_API_PORT", 8000))

# Pipeline defaults (overridden by the definition's options block)
DEFAULT_TIMEOUT_MINUTES = int(os.getenv("CIRUNNER_DEFAULT_TIMEOUT_MINUTES", 60))
DEFAULT_HISTORY_RETENTION = int(os.getenv("CIRUNNER_DEFAULT_HISTORY_RETENTION", 10))

# SCM poller tick (seconds between schedule checks)
POLL_TICK_SECONDS = int(os.getenv("CIRUNNER_POLL_TICK_SECONDS", 60))

# Docker agent resource limits
DOCKER_MEMORY_LIMIT = os.getenv("CIRUNNER_DOCKER_MEMORY_LIMIT", "4g")
DOCKER_CPU_COUNT = int(os.getenv("CIRUNNER_DOCKER_CPU_COUNT", 2))
