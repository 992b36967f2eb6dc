"""FastAPI main application."""
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from src.config import config, Config
from src.errors import StockOrderError
from src.fetch.client import VendorClient
from src.jobs.orchestrator import CommitResponse, OrderItem, OrderOrchestrator, PreviewResponse
from src.logging_conf import setup_logging
from src.store.models import Task, utcnow
from src.store.state import StateDB

logger = logging.getLogger(__name__)

app = FastAPI(title="Stock Order API", version="0.1.0")

# API Key security (if configured)
API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)


def verify_api_key(api_key: str = Depends(API_KEY_HEADER)) -> bool:
    """Verify API key if configured."""
    expected_key = config.API_KEY
    if expected_key:
        if not api_key or api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API key")
    return True


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, as established by the upstream auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_orchestrator(request: Request) -> OrderOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return orchestrator


@app.on_event("startup")
async def startup():
    """Initialize the store and the vendor client unless one was injected."""
    if getattr(app.state, "orchestrator", None) is not None:
        return
    setup_logging()
    state = StateDB()
    await state.initialize()
    app.state.orchestrator = OrderOrchestrator(VendorClient(), state)


@app.on_event("shutdown")
async def shutdown():
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None and isinstance(orchestrator.vendor, VendorClient):
        await orchestrator.vendor.close()


@app.exception_handler(StockOrderError)
async def stock_order_error_handler(request: Request, exc: StockOrderError):
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_dict()})


class PreviewRequest(BaseModel):
    """Request model for previewing orders."""
    items: list[OrderItem] = Field(..., description="Assets to quote, at most one batch")
    response_type: Optional[str] = Field(default=None, description="any, gdrive, mydrivelink or asia")


class CommitRequest(BaseModel):
    """Request model for placing previewed orders."""
    task_ids: list[str] = Field(..., description="Ids returned by preview")
    response_type: Optional[str] = None


@app.get("/health")
async def health(orchestrator: OrderOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint (no auth required)."""
    return {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "orders": await orchestrator.state.get_stats(),
    }


@app.get("/stock/sites")
async def list_sites(
    refresh: bool = Query(default=False),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Catalog of stock sites with prices."""
    sites = await orchestrator.pricing.get_sites(force_refresh=refresh)
    return {"sites": sites}


@app.post("/stock/preview", response_model=PreviewResponse)
async def preview(
    request: PreviewRequest,
    user_id: str = Depends(current_user),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Resolve and quote assets. Nothing is charged."""
    try:
        return await orchestrator.preview_order(user_id, request.items, response_type=request.response_type)
    except StockOrderError:
        raise
    except Exception as e:
        logger.error(f"Error previewing order for {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@app.post("/stock/commit", response_model=CommitResponse)
async def commit(
    request: CommitRequest,
    user_id: str = Depends(current_user),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Place previewed orders; each one is charged at most once."""
    try:
        return await orchestrator.commit_order(user_id, request.task_ids, response_type=request.response_type)
    except StockOrderError:
        raise
    except Exception as e:
        logger.error(f"Error committing orders for {user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@app.post("/stock/orders/{task_id}/poll", response_model=Task)
async def poll_order(
    task_id: str,
    user_id: str = Depends(current_user),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Check an order's progress once."""
    return await orchestrator.poll_once(task_id, user_id=user_id)


@app.get("/stock/orders")
async def list_orders(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(current_user),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Order history, newest first."""
    return await orchestrator.list_orders(user_id, page=page, limit=limit)


@app.get("/stock/orders/{task_id}/download")
async def download(
    task_id: str,
    response_type: Optional[str] = Query(default=None),
    user_id: str = Depends(current_user),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Fresh download link for a completed order."""
    info = await orchestrator.redownload(task_id, user_id, response_type=response_type)
    return {"download": info}


@app.get("/stock/batches/{batch_id}")
async def batch_status(
    batch_id: str,
    user_id: str = Depends(current_user),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Batch progress derived from its orders."""
    return await orchestrator.get_batch_status(batch_id, user_id=user_id)


@app.get("/account/balance")
async def balance(
    user_id: str = Depends(current_user),
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Point balance and recent ledger entries."""
    return {
        "user_id": user_id,
        "balance": await orchestrator.ledger.get_balance(user_id),
        "history": await orchestrator.ledger.history(user_id, limit=20),
    }


if __name__ == "__main__":
    import uvicorn
    Config.validate()
    uvicorn.run(app, host="0.0.0.0", port=8000)
