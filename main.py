import uvicorn
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from selfheal.agents.auto_commit import AutoCommitService
from selfheal.agents.circuit_breaker import CircuitBreaker
from selfheal.agents.phoenix_loop import PhoenixLoop
from selfheal.agents.repair_orchestrator import RepairOrchestrator
from selfheal.api.sessions import router as sessions_router
from selfheal.core.config import (
    CI_WORKFLOW_FILE,
    GITHUB_REPO,
    GITHUB_TOKEN,
    LOG_DIR,
    TELEMETRY_URL,
    PhoenixConfig,
)
from selfheal.integrations.ci import GitHubActionsCI, InMemoryCI
from selfheal.integrations.vcs import GitHubVCS, InMemoryVCS
from selfheal.llm.client import StreamingLLMClient
from selfheal.patching.patch_engine import PatchEngine
from selfheal.services.telemetry import CompositeTelemetrySink, HttpTelemetrySink, LoggingTelemetrySink
from selfheal.utils.logging_config import setup_logging

# Initialize enhanced logging
setup_logging(level=logging.INFO, log_dir=LOG_DIR or None)
logger = logging.getLogger("main")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------
def build_phoenix(config: Optional[PhoenixConfig] = None) -> PhoenixLoop:
    """
    Assemble the loop from environment settings.

    GitHub adapters are used when GITHUB_TOKEN and GITHUB_REPO are both set;
    otherwise commits and rebuilds go to in-memory stand-ins (dry run).
    """
    config = config or PhoenixConfig()

    telemetry = LoggingTelemetrySink()
    if TELEMETRY_URL:
        telemetry = CompositeTelemetrySink(telemetry, HttpTelemetrySink(TELEMETRY_URL))

    if GITHUB_TOKEN and GITHUB_REPO:
        vcs = GitHubVCS(
            GITHUB_TOKEN, GITHUB_REPO,
            timeout_seconds=config.commit.vcs_timeout_seconds,
            author_name=config.commit.author_name,
            author_email=config.commit.author_email,
        )
        ci = GitHubActionsCI(
            GITHUB_TOKEN, GITHUB_REPO,
            workflow_file=CI_WORKFLOW_FILE,
            timeout_seconds=config.commit.ci_timeout_seconds,
        )
        logger.info("Phoenix commits to %s via GitHub", GITHUB_REPO)
    else:
        vcs = InMemoryVCS(base_branch=config.commit.base_branch)
        ci = InMemoryCI()
        logger.warning("GITHUB_TOKEN / GITHUB_REPO not set; running in dry-run mode")

    orchestrator = RepairOrchestrator(
        CircuitBreaker(config.circuit_breaker),
        PatchEngine(),
        config.repair,
        telemetry=telemetry,
    )
    auto_commit = AutoCommitService(vcs, ci, config.commit, telemetry=telemetry)
    return PhoenixLoop(orchestrator, auto_commit, StreamingLLMClient(), config, telemetry=telemetry)


async def _close_collaborators(phoenix: PhoenixLoop) -> None:
    for resource in (phoenix.ai_provider, phoenix.auto_commit.vcs, phoenix.telemetry):
        close = getattr(resource, "close", None) or getattr(resource, "flush", None)
        if close is not None:
            await close()


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info("Incoming: %s %s from %s", request.method, request.url.path, client_host)

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                "Outgoing: %s %s - Status: %s - Time: %.2fms",
                request.method, request.url.path, response.status_code, process_time,
            )
            return response
        except Exception as e:
            logger.error("Request failed: %s %s - Error: %s", request.method, request.url.path, e)
            raise


def create_app(phoenix: Optional[PhoenixLoop] = None) -> FastAPI:
    phoenix = phoenix or build_phoenix()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await _close_collaborators(app.state.phoenix)

    app = FastAPI(title="Self-Healing Repair Pipeline API", lifespan=lifespan)
    app.state.phoenix = phoenix

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:8000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sessions_router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
