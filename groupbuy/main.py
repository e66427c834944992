# main.py
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo import MongoClient

from groupbuy import config
from groupbuy.errors import Reason, StorageError
from groupbuy.order_service import OrderService
from groupbuy.order_store import InMemoryOrderStore, MongoOrderStore
from groupbuy.schemas import Rejected, StatusUpdate, SubmitOrderRequest
from groupbuy.stock_ledger import InMemoryStockLedger, MongoStockLedger

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
LOG = logging.getLogger("groupbuy.api")

HTTP_STATUS = {
    Reason.INVALID_QUANTITY: 400,
    Reason.INVALID_REQUEST: 400,
    Reason.NOT_FOUND: 404,
    Reason.INSUFFICIENT_STOCK: 409,
    Reason.INVALID_STATUS: 409,
    Reason.PERSISTENCE_ERROR: 503,
}

app = FastAPI(title="Group Buy Order Service")


def build_service() -> OrderService:
    if config.BACKEND == "memory":
        LOG.info("Using in-process ledger and order store")
        return OrderService(InMemoryStockLedger(), InMemoryOrderStore())

    client = MongoClient(config.MONGO_URL)
    db = client[config.DB_NAME]
    ledger = MongoStockLedger(db[config.PRODUCTS_COLL])
    orders = MongoOrderStore(db[config.ORDERS_COLL])
    ledger.ensure_indexes()
    orders.ensure_indexes()
    LOG.info("Connected to %s/%s", config.MONGO_URL, config.DB_NAME)
    return OrderService(ledger, orders)


@app.on_event("startup")
def startup():
    if getattr(app.state, "order_service", None) is None:
        app.state.order_service = build_service()


def service() -> OrderService:
    return app.state.order_service


@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{where}: {err.get('msg')}" if where else err.get("msg", ""))
    message = "Malformed request: " + "; ".join(problems)
    LOG.warning("%s %s rejected: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=HTTP_STATUS[Reason.INVALID_REQUEST],
                        content={"status": "error", "reason": Reason.INVALID_REQUEST.value, "message": message})


def _raise_for(rejected: Rejected):
    raise HTTPException(status_code=HTTP_STATUS[rejected.reason], detail=rejected.message)


# --- API Endpoints ---
@app.post("/api/orders")
def create_order(req: SubmitOrderRequest):
    result = service().submit(req.shop_id, req.items, req.customer, coupon_id=req.coupon_id)
    body = result.model_dump(mode="json", by_alias=True, exclude_none=True)
    if result.status == "success":
        return body
    return JSONResponse(status_code=HTTP_STATUS[result.reason], content=body)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str):
    try:
        order = service().get_order(order_id)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return order.model_dump(mode="json")


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdate):
    try:
        result = service().update_status(order_id, body.status)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if isinstance(result, Rejected):
        _raise_for(result)
    return result.model_dump(mode="json")


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    try:
        product = service().get_product(product_id)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if product is None or product.is_deleted:
        raise HTTPException(status_code=404, detail=f"Product {product_id} not found")
    body = product.model_dump(mode="json")
    body["remaining"] = product.total_stock
    body["target_reached"] = product.target_reached
    return body


@app.get("/health")
def health():
    return {"ok": True}


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.PORT)


if __name__ == "__main__":
    run()
