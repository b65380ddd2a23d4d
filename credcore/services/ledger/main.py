"""
credcore Ledger Service (port 8100)
-----------------------------------
Credit accounts, derived balances, ledger history, direct spends, top-ups,
adjustments, team budgets and holds.
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
    logger.info("credcore_ledger_starting")
    create_all_tables()
    logger.info("credcore_ledger_tables_ready")
    yield
    logger.info("credcore_ledger_stopping")


app = FastAPI(
    title="credcore Ledger Service",
    version="0.1.0",
    description="Append-only credit ledger with holds and derived balances.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handler(app)

from credcore.services.ledger.routes_accounts import router as accounts_router  # noqa: E402
from credcore.services.ledger.routes_holds    import router as holds_router     # noqa: E402

app.include_router(accounts_router, prefix="/api", tags=["Accounts"])
app.include_router(holds_router,    prefix="/api", tags=["Holds"])


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "credcore-ledger", "version": "0.1.0"}
