import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cashback_engine.config import LOG_LEVEL
from cashback_engine.db import engine, Base
from cashback_engine.errors import EngineError, InsufficientBalanceError

from cashback_engine.models.tier import Tier
from cashback_engine.models.customer import Customer
from cashback_engine.models.customer_membership import CustomerMembership
from cashback_engine.models.tier_change_log import TierChangeLog
from cashback_engine.models.cashback_transaction import CashbackTransaction
from cashback_engine.models.store_credit_ledger_entry import StoreCreditLedgerEntry
from cashback_engine.models.customer_analytics import CustomerAnalytics
from cashback_engine.models.maintenance_job import MaintenanceJob
from cashback_engine.models.order_import import OrderImport

from cashback_engine.routes.tiers import router as tiers_router
from cashback_engine.routes.customers import router as customers_router
from cashback_engine.routes.orders import router as orders_router
from cashback_engine.routes.maintenance import router as maintenance_router
from cashback_engine.routes.maintenance_jobs import router as maintenance_jobs_router
from cashback_engine.routes.order_imports import router as order_imports_router

logging.basicConfig(level=LOG_LEVEL)

logger = logging.getLogger(__name__)

app = FastAPI(title="Cashback Engine")

# ─── CORS ─────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
def handle_engine_error(request: Request, exc: EngineError):
    body = {"detail": exc.message}
    if isinstance(exc, InsufficientBalanceError):
        body["balance"] = str(exc.balance) if exc.balance is not None else None
        body["requested"] = str(exc.requested) if exc.requested is not None else None
    if exc.status_code >= 500:
        logger.warning("request failed upstream", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content=body)


@app.on_event("startup")
def startup():
    Base.metadata.create_all(bind=engine)


app.include_router(tiers_router)
app.include_router(customers_router)
app.include_router(orders_router)
app.include_router(maintenance_router)
app.include_router(maintenance_jobs_router)
app.include_router(order_imports_router)


@app.get("/")
def read_root():
    return {"message": "Cashback Engine is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8001)
