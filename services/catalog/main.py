"""Catalog service API built with FastAPI.

Exposes the food catalog to the orders web app: item lookup (name, price,
availability, stock) and stock adjustments. Negative deltas reserve stock
for an order, positive deltas release it. Persistence and locking live in
``repo.CatalogRepo``.
"""

import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr, field_validator
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from repo import CatalogRepo, FoodMissing, StockExhausted, engine, init_db

app = FastAPI(title="Catalog Service")

FoodId = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")

logger = logging.getLogger("catalog")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly for the database to accept connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class FoodOut(BaseModel):
    food_id: str
    name: str
    price: int
    stock_quantity: int
    is_available: bool


class FoodIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    price: int = Field(ge=0)
    stock_quantity: int = Field(ge=0)
    is_available: bool = True


class StockAdjustRequest(BaseModel):
    """Signed stock change; zero is rejected as a no-op request."""

    delta: int

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must not be zero")
        return v


class StockAdjustResponse(BaseModel):
    food_id: str
    stock_quantity: int


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/foods/{food_id}", response_model=FoodOut)
def get_food(food_id: FoodId):
    item = CatalogRepo().get(food_id)
    if item is None:
        raise HTTPException(status_code=404, detail="FOOD_NOT_FOUND")
    return FoodOut(**item)


@app.put("/foods/{food_id}", response_model=FoodOut)
def put_food(food_id: FoodId, body: FoodIn):
    item = CatalogRepo().upsert(food_id, body.name, body.price, body.stock_quantity, body.is_available)
    return FoodOut(**item)


@app.post("/foods/{food_id}/stock", response_model=StockAdjustResponse)
def adjust_stock(food_id: FoodId, req: StockAdjustRequest):
    """Apply a stock delta atomically.

    Raises:
        HTTPException: 404 for an unknown item, 422 ``INSUFFICIENT_STOCK``
            when a decrement would make stock negative.
    """
    try:
        qty = CatalogRepo().adjust_stock(food_id, req.delta)
    except FoodMissing:
        raise HTTPException(status_code=404, detail="FOOD_NOT_FOUND")
    except StockExhausted:
        raise HTTPException(status_code=422, detail="INSUFFICIENT_STOCK")
    logger.info("stock adjusted", extra={"food_id": food_id, "delta": req.delta, "stock_quantity": qty})
    return StockAdjustResponse(food_id=food_id, stock_quantity=qty)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
