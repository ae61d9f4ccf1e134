import uvicorn
import time
import logging
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from cirunner.api.runs import router as runs_router
from cirunner.core.config import API_HOST, API_PORT, LOG_LEVEL, REPO_URL, WORKSPACE
from cirunner.core.exceptions import PipelineDefinitionError
from cirunner.parser.pipeline_reader import discover_pipeline_file, load_pipeline
from cirunner.services.repo_service import resolve_workspace
from cirunner.services.run_history import RunHistory
from cirunner.services.run_manager import RunManager
from cirunner.utils.logging_config import setup_logging

setup_logging(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("main")

app = FastAPI(title="cirunner pipeline API")


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise e

app.add_middleware(LoggingMiddleware)


def build_manager() -> RunManager:
    """Build the RunManager from configuration (CIRUNNER_* variables)."""
    workspace, managed = resolve_workspace(WORKSPACE, REPO_URL)
    path = discover_pipeline_file(workspace)
    try:
        definition = load_pipeline(path)
    except PipelineDefinitionError:
        logger.exception("Cannot serve: invalid pipeline definition")
        raise
    return RunManager(
        definition=definition,
        workspace=workspace,
        history=RunHistory(definition.name),
        repo_url=REPO_URL,
        manage_workspace=managed,
    )

app.state.manager_factory = build_manager


# Health endpoint
@app.get("/health")
async def health_check():
    return {"status": "ok"}

# Register routers
app.include_router(runs_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host=API_HOST, port=API_PORT, reload=False)
