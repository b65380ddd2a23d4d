"""
credcore Approvals Service (port 8200)
--------------------------------------
Approval requests and their state machine, approval queues, routing rules and
approver assignments. Holds and debits are written in-process through the
ledger modules so each transition commits in one transaction.
"""

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from credcore.services.shared.database import create_all_tables
from credcore.services.shared.errors import install_error_handler

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("credcore_approvals_starting")
    create_all_tables()
    logger.info("credcore_approvals_tables_ready")
    yield
    logger.info("credcore_approvals_stopping")


app = FastAPI(
    title="credcore Approvals Service",
    version="0.1.0",
    description="Credit approval workflow with threshold routing, escalation and audit trail.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handler(app)

from credcore.services.approvals.routes_requests import router as requests_router  # noqa: E402
from credcore.services.approvals.routes_rules    import router as rules_router     # noqa: E402

app.include_router(requests_router, prefix="/api", tags=["Requests"])
app.include_router(rules_router,    prefix="/api", tags=["Routing"])


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "credcore-approvals", "version": "0.1.0"}
