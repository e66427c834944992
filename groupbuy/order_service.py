"""
Order service: the public entry point for submitting and tracking orders.

submit() validates the cart, then commits it. Storage faults (including an
order id collision) are retried with a fresh order id a bounded number of
times; stock and catalogue outcomes are returned to the caller as they are.
"""
import logging
import random
import time
from datetime import datetime
from typing import List, Optional, Union

from groupbuy import config
from groupbuy.errors import Reason, StorageError
from groupbuy.order_store import OrderStore
from groupbuy.order_validator import OrderValidator
from groupbuy.order_writer import OrderWriter
from groupbuy.schemas import (Customer, Failed, LineItem, Order, OrderStatus, Product, Rejected,
                              SubmitResult)
from groupbuy.stock_ledger import StockLedger

LOG = logging.getLogger("groupbuy.service")

UNAVAILABLE = "The order could not be saved right now, please try again later"

# forward-only status lifecycle
TRANSITIONS = {
    "created": {"pending_payment", "cancelled"},
    "pending_payment": {"fulfilled", "cancelled"},
    "fulfilled": set(),
    "cancelled": set(),
}


def generate_order_id(now: Optional[datetime] = None) -> str:
    """YYYYMMDD-NNNN, e.g. 20261019-4821. Not unique on its own."""
    now = now or datetime.now()
    return f"{now:%Y%m%d}-{random.randint(1000, 9999)}"


class OrderService:
    def __init__(self, ledger: StockLedger, order_store: OrderStore,
                 attempts: int = config.ORDER_SUBMIT_ATTEMPTS,
                 backoff: float = config.ORDER_RETRY_BACKOFF):
        self.ledger = ledger
        self.order_store = order_store
        self.validator = OrderValidator(ledger)
        self.writer = OrderWriter(ledger, order_store, backoff=backoff)
        self.attempts = max(1, attempts)
        self.backoff = backoff

    def submit(self, shop_id: str, items: List[LineItem], customer: Customer,
               coupon_id: Optional[str] = None) -> SubmitResult:
        try:
            plan = self.validator.validate(shop_id, items)
        except StorageError as e:
            LOG.warning("Catalogue lookup failed for shop %s: %s", shop_id, e)
            return SubmitResult.error(Failed(reason=Reason.PERSISTENCE_ERROR, message=UNAVAILABLE))
        if isinstance(plan, Rejected):
            return SubmitResult.error(plan)

        snapshot = [item.model_copy(deep=True) for item in items]
        failure = None
        for attempt in range(1, self.attempts + 1):
            order = Order(order_id=generate_order_id(), shop_id=shop_id, customer=customer.model_copy(),
                          items=snapshot, total_amount=plan.total_amount, coupon_id=coupon_id)
            outcome = self.writer.commit(order, plan)
            if isinstance(outcome, str):
                LOG.info("Order %s submitted for shop %s (attempt %d)", outcome, shop_id, attempt)
                return SubmitResult.success(outcome)

            failure = outcome
            if outcome.reason != Reason.PERSISTENCE_ERROR:
                LOG.warning("Order for shop %s failed: %s", shop_id, outcome.message)
                return SubmitResult.error(outcome)
            if not outcome.rollback_complete:
                LOG.error("Order for shop %s left stock held after a failed rollback, not retrying", shop_id)
                return SubmitResult.error(outcome.model_copy(update={"message": UNAVAILABLE}))
            LOG.warning("Order for shop %s hit a storage fault (attempt %d/%d): %s",
                        shop_id, attempt, self.attempts, outcome.message)
            if attempt < self.attempts:
                time.sleep(self.backoff * attempt)

        LOG.error("Giving up on order for shop %s after %d attempts", shop_id, self.attempts)
        return SubmitResult.error(failure.model_copy(update={"message": UNAVAILABLE}))

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.order_store.get(order_id)

    def get_product(self, product_id: str) -> Optional[Product]:
        return self.ledger.get_snapshot(product_id)

    def update_status(self, order_id: str, status: OrderStatus) -> Union[Order, Rejected]:
        """Status changes touch the status field only; items and total never change."""
        order = self.order_store.get(order_id)
        if order is None:
            return Rejected(reason=Reason.NOT_FOUND, message=f"Order {order_id} not found")
        if status not in TRANSITIONS[order.status]:
            return Rejected(reason=Reason.INVALID_STATUS,
                            message=f"Order {order_id} cannot move from {order.status} to {status}")
        if not self.order_store.set_status(order_id, order.status, status):
            return Rejected(reason=Reason.INVALID_STATUS,
                            message=f"Order {order_id} was changed concurrently, reload and retry")
        LOG.info("Order %s: %s -> %s", order_id, order.status, status)
        return self.order_store.get(order_id)
