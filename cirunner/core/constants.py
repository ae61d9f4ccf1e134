"""
Constants
Centralised storage for step kinds, post conditions and CLI exit codes.
"""
STEP_KINDS = ["sh", "echo", "junit", "coverage", "checkout", "clean_ws", "notify"]

# Order in which pipeline/stage post blocks are evaluated
POST_CONDITIONS = ["always", "aborted", "failure", "success", "unstable"]

COVERAGE_ADAPTERS = ["cobertura"]

CONTAINER_WORKSPACE = "/workspace"

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_UNSTABLE = 2
