from enum import Enum


class Reason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_REQUEST = "INVALID_REQUEST"


class StorageError(Exception):
    """Raised by a backend when the datastore itself misbehaves."""


class LedgerTimeout(StorageError):
    """A reservation could not get hold of its product in time."""


class DuplicateOrderId(StorageError):
    def __init__(self, order_id: str):
        super().__init__(f"Order id already taken: {order_id}")
        self.order_id = order_id
