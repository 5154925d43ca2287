import os
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .orchestrator import GenerationOrchestrator, balance_router, job_router, timeline_router

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(orchestrator: Optional[GenerationOrchestrator] = None) -> FastAPI:
    """Build the API. Without an orchestrator one is built from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Orchestrator worker starting up...")
        metrics.set_gauge("start_time", time.time())
        if app.state.orchestrator is None:
            app.state.orchestrator = GenerationOrchestrator.from_env()
        # Settle crashed charges and re-attach workers from a previous session
        await app.state.orchestrator.start()
        yield
        logger.info("Orchestrator worker shutting down...")
        await app.state.orchestrator.shutdown()

    app = FastAPI(title="studio-worker orchestrator", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.add_middleware(WorkerAuthMiddleware)
    app.include_router(job_router)
    app.include_router(timeline_router)
    app.include_router(balance_router)

    @app.get("/health")
    def health_check():
        """Verify the worker is running and see which backends are configured."""
        return {
            "status": "ok",
            "redis_configured": bool(os.environ.get("REDIS_URL")),
            "supabase_configured": bool(
                os.environ.get("SUPABASE_URL") and os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
            ),
            "providers": {
                "kie": bool(os.environ.get("KIE_API_KEY")),
                "fal": bool(os.environ.get("FAL_API_KEY")),
                "replicate": bool(os.environ.get("REPLICATE_API_KEY")),
                "luma": bool(os.environ.get("LUMA_API_KEY")),
            },
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all orchestrator metrics."""
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("studio_worker.main:app", host="0.0.0.0", port=port)
