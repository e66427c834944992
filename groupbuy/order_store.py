import logging
import random
import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from groupbuy import config
from groupbuy.errors import DuplicateOrderId, StorageError
from groupbuy.schemas import Order, OrderStatus

LOG = logging.getLogger("groupbuy.orders")


class OrderStore:
    """Append-only order records; order_id is unique."""

    def insert(self, order: Order) -> None:
        raise NotImplementedError

    def get(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError

    def set_status(self, order_id: str, current: OrderStatus, new: OrderStatus) -> bool:
        """Move an order from `current` to `new`. False if it is no longer in `current`."""
        raise NotImplementedError


class InMemoryOrderStore(OrderStore):
    def __init__(self, drop_rate: int = config.ORDER_STORE_DROP_RATE):
        self.drop_rate = drop_rate
        self._orders: Dict[str, Order] = {}
        self._lock = threading.Lock()

    def insert(self, order: Order) -> None:
        # simulate a storage fault
        if self.drop_rate > 0 and random.randint(0, 99) < self.drop_rate:
            raise StorageError("simulated order store drop")
        with self._lock:
            if order.order_id in self._orders:
                raise DuplicateOrderId(order.order_id)
            self._orders[order.order_id] = order.model_copy(deep=True)

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    def set_status(self, order_id, current, new):
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != current:
                return False
            order.status = new
            order.updated_at = datetime.now(timezone.utc)
            return True

    def count(self) -> int:
        with self._lock:
            return len(self._orders)


class MongoOrderStore(OrderStore):
    def __init__(self, collection):
        self.col = collection

    def ensure_indexes(self) -> None:
        try:
            self.col.create_index("shop_id")
            self.col.create_index("status")
        except PyMongoError as e:
            raise StorageError(str(e)) from e

    def insert(self, order: Order) -> None:
        doc = order.model_dump()
        doc["_id"] = doc.pop("order_id")
        try:
            self.col.insert_one(doc)
        except DuplicateKeyError as e:
            raise DuplicateOrderId(order.order_id) from e
        except PyMongoError as e:
            raise StorageError(str(e)) from e

    def get(self, order_id: str) -> Optional[Order]:
        try:
            doc = self.col.find_one({"_id": order_id})
        except PyMongoError as e:
            raise StorageError(str(e)) from e
        if doc is None:
            return None
        data = {k: v for k, v in doc.items() if k != "_id"}
        return Order(order_id=doc["_id"], **data)

    def set_status(self, order_id, current, new):
        try:
            res = self.col.update_one(
                {"_id": order_id, "status": current},
                {"$set": {"status": new, "updated_at": datetime.now(timezone.utc)}},
            )
        except PyMongoError as e:
            raise StorageError(str(e)) from e
        return res.modified_count == 1
