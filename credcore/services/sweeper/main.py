"""
credcore Sweeper Service (port 8300)
------------------------------------
Runs the escalation and expiration sweeps in a background loop every
SWEEP_INTERVAL_SECONDS, and exposes a manual trigger for operators.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from credcore.services.shared.auth import Actor, get_actor
from credcore.services.shared.database import SessionLocal, create_all_tables
from credcore.services.shared.errors import Unauthorized, install_error_handler
from credcore.services.shared.schemas import SweepResultOut
from credcore.services.sweeper import sweeper

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()

SWEEP_LOOP_ENABLED = os.getenv("SWEEP_LOOP_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("credcore_sweeper_starting")
    create_all_tables()
    logger.info("credcore_sweeper_tables_ready")

    sweep_task = None
    if SWEEP_LOOP_ENABLED:
        sweep_task = asyncio.create_task(sweeper.run_sweep_loop(sweeper.SWEEP_INTERVAL_SECONDS))
    yield

    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    logger.info("credcore_sweeper_stopping")


app = FastAPI(
    title="credcore Sweeper Service",
    version="0.1.0",
    description="Escalates and expires pending approval requests past their SLA deadline.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handler(app)


def get_session_factory():
    """FastAPI dependency: the session factory each swept request opens sessions from."""
    return SessionLocal


@app.post("/api/sweeps/run", response_model=SweepResultOut, tags=["Sweeps"])
def run_sweeps(actor: Actor = Depends(get_actor), session_factory=Depends(get_session_factory)):
    """Run one escalation + expiration pass now (admin)."""
    if not actor.is_admin:
        raise Unauthorized("Admin role required", detail={"actor_id": actor.user_id})
    return sweeper.run_sweep_once(session_factory)


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "credcore-sweeper", "version": "0.1.0"}
