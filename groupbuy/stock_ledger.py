"""
Stock ledger: the only component allowed to change stock counters.

Every reservation is an atomic check-and-decrement on one product. The
in-process ledger serializes per product with a lock, the MongoDB ledger
relies on conditional document updates so oversells are prevented at DB level.
Open reservations are tracked until they are confirmed or released, so a
reservation can be compensated at most once.
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Optional

import pymongo
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from groupbuy import config
from groupbuy.errors import LedgerTimeout, StorageError
from groupbuy.schemas import Product, Reservation, ReserveResult

LOG = logging.getLogger("groupbuy.ledger")


class StockLedger:
    def __init__(self, timeout: float = config.RESERVE_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._open: Dict[str, Reservation] = {}
        self._open_lock = threading.Lock()

    # --- backend hooks ---
    def add_product(self, product: Product) -> None:
        raise NotImplementedError

    def get_snapshot(self, product_id: str) -> Optional[Product]:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError

    def _reserve(self, product_id: str, variant: Optional[str], quantity: int) -> ReserveResult:
        raise NotImplementedError

    def _restock(self, reservation: Reservation) -> None:
        raise NotImplementedError

    # --- public operations ---
    def try_reserve(self, product_id: str, variant: Optional[str], quantity: int) -> ReserveResult:
        if quantity <= 0:
            raise ValueError(f"Reservation quantity must be positive, got {quantity}")

        result = self._reserve(product_id, variant, quantity)
        if result.status == "reserved":
            with self._open_lock:
                self._open[result.reservation.reservation_id] = result.reservation
            LOG.info("Reserved %d of %s/%s (reservation=%s, remaining=%d)",
                     quantity, product_id, variant or "-", result.reservation.reservation_id, result.remaining)
        else:
            LOG.info("Reserve %s for %s/%s x%d (remaining=%d)",
                     result.status, product_id, variant or "-", quantity, result.remaining)
        return result

    def release(self, reservation: Reservation) -> bool:
        """Compensating transaction: give the reserved quantity back."""
        with self._open_lock:
            held = self._open.pop(reservation.reservation_id, None)
        if held is None:
            LOG.error("Release without a matching open reservation: %s (%s/%s x%d)",
                      reservation.reservation_id, reservation.product_id,
                      reservation.variant or "-", reservation.quantity)
            return False

        try:
            self._restock(held)
        except StorageError:
            # still owed to the shelf, keep it releasable
            with self._open_lock:
                self._open[held.reservation_id] = held
            raise
        LOG.info("Released %d of %s/%s (reservation=%s)",
                 held.quantity, held.product_id, held.variant or "-", held.reservation_id)
        return True

    def confirm(self, reservation: Reservation) -> bool:
        """Make a reservation permanent once its order is stored."""
        with self._open_lock:
            held = self._open.pop(reservation.reservation_id, None)
        if held is None:
            LOG.error("Confirm without a matching open reservation: %s", reservation.reservation_id)
            return False
        return True

    def open_reservations(self) -> int:
        with self._open_lock:
            return len(self._open)


class InMemoryStockLedger(StockLedger):
    """Keeps products in process memory, one lock per product id."""

    def __init__(self, products=(), timeout: float = config.RESERVE_TIMEOUT_SECONDS):
        super().__init__(timeout)
        self._products: Dict[str, Product] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        for product in products:
            self.add_product(product)

    def _lock_for(self, product_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(product_id, threading.Lock())

    @contextmanager
    def _holding(self, product_id: str):
        lock = self._lock_for(product_id)
        if not lock.acquire(timeout=self.timeout):
            raise LedgerTimeout(f"Timed out after {self.timeout}s waiting for product {product_id}")
        try:
            yield
        finally:
            lock.release()

    def add_product(self, product: Product) -> None:
        with self._holding(product.product_id):
            self._products[product.product_id] = product.model_copy(deep=True)

    def get_snapshot(self, product_id: str) -> Optional[Product]:
        with self._holding(product_id):
            product = self._products.get(product_id)
            return product.model_copy(deep=True) if product else None

    def reset(self) -> None:
        """Drop every product. Waits for in-flight reservations; lock objects are kept."""
        with self._registry_lock:
            locks = list(self._locks.values())
        taken = []
        try:
            for lock in locks:
                if not lock.acquire(timeout=self.timeout):
                    raise LedgerTimeout(f"Timed out after {self.timeout}s waiting to reset the ledger")
                taken.append(lock)
            self._products.clear()
            with self._open_lock:
                self._open.clear()
        finally:
            for lock in taken:
                lock.release()
        LOG.info("Ledger reset")

    def _reserve(self, product_id, variant, quantity):
        with self._holding(product_id):
            product = self._products.get(product_id)
            if product is None or product.is_deleted:
                return ReserveResult(status="not_found")

            if variant is None:
                if product.variants:
                    return ReserveResult(status="not_found")
                if product.total_stock < quantity:
                    return ReserveResult(status="insufficient_stock", remaining=product.total_stock)
                product.total_stock -= quantity
                remaining = product.total_stock
            else:
                v = product.find_variant(variant)
                if v is None:
                    return ReserveResult(status="not_found")
                if v.stock < quantity:
                    return ReserveResult(status="insufficient_stock", remaining=v.stock)
                v.stock -= quantity
                product.total_stock = sum(x.stock for x in product.variants)
                remaining = v.stock

            product.current_amount += quantity
            reservation = Reservation(product_id=product_id, variant=variant, quantity=quantity)
            return ReserveResult(status="reserved", reservation=reservation, remaining=remaining)

    def _restock(self, reservation):
        with self._holding(reservation.product_id):
            product = self._products.get(reservation.product_id)
            if product is None:
                raise StorageError(f"Product {reservation.product_id} disappeared before release")
            if reservation.variant is None:
                product.total_stock += reservation.quantity
            else:
                v = product.find_variant(reservation.variant)
                if v is None:
                    raise StorageError(f"Variant {reservation.variant} of {reservation.product_id} "
                                       f"disappeared before release")
                v.stock += reservation.quantity
                product.total_stock = sum(x.stock for x in product.variants)
            product.current_amount = max(0, product.current_amount - reservation.quantity)


def product_to_doc(product: Product) -> dict:
    doc = product.model_dump()
    doc["_id"] = doc.pop("product_id")
    doc["version"] = 0
    return doc


def product_from_doc(doc: dict) -> Product:
    data = {k: v for k, v in doc.items() if k not in ("_id", "version")}
    return Product(product_id=doc["_id"], **data)


class MongoStockLedger(StockLedger):
    """
    Products live in one collection keyed by product id.

    Plain products are reserved with a single find_one_and_update filtered on
    total_stock >= qty. Products with variants are rewritten as a whole under a
    version check (compare-and-swap) so the variant list and total_stock stay in step.
    """

    def __init__(self, collection, timeout: float = config.RESERVE_TIMEOUT_SECONDS,
                 conflict_backoff: float = config.CAS_RETRY_BACKOFF):
        super().__init__(timeout)
        self.col = collection
        self.conflict_backoff = conflict_backoff

    @contextmanager
    def _bounded(self):
        try:
            with pymongo.timeout(self.timeout):
                yield
        except PyMongoError as e:
            if getattr(e, "timeout", False):
                raise LedgerTimeout(str(e)) from e
            raise StorageError(str(e)) from e

    def ensure_indexes(self) -> None:
        with self._bounded():
            self.col.create_index("shop_id")

    def add_product(self, product: Product) -> None:
        with self._bounded():
            self.col.replace_one({"_id": product.product_id}, product_to_doc(product), upsert=True)

    def get_snapshot(self, product_id: str) -> Optional[Product]:
        with self._bounded():
            doc = self.col.find_one({"_id": product_id})
        return product_from_doc(doc) if doc else None

    def reset(self) -> None:
        with self._bounded():
            self.col.delete_many({})
        with self._open_lock:
            self._open.clear()

    def _reserve(self, product_id, variant, quantity):
        if variant is not None:
            return self._reserve_variant(product_id, variant, quantity)

        # atomic decrement
        with self._bounded():
            doc = self.col.find_one_and_update(
                {"_id": product_id, "is_deleted": {"$ne": True},
                 "variants": {"$size": 0}, "total_stock": {"$gte": quantity}},
                {"$inc": {"total_stock": -quantity, "current_amount": quantity, "version": 1}},
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                cur = self.col.find_one({"_id": product_id})

        if doc is not None:
            reservation = Reservation(product_id=product_id, quantity=quantity)
            return ReserveResult(status="reserved", reservation=reservation, remaining=doc["total_stock"])
        if cur is None or cur.get("is_deleted") or cur.get("variants"):
            return ReserveResult(status="not_found")
        return ReserveResult(status="insufficient_stock", remaining=cur["total_stock"])

    def _reserve_variant(self, product_id, variant, quantity):
        outcome = {}

        def take(variants):
            for v in variants:
                if v["name"] == variant:
                    if v["stock"] < quantity:
                        outcome["result"] = ReserveResult(status="insufficient_stock", remaining=v["stock"])
                        return False
                    v["stock"] -= quantity
                    outcome["remaining"] = v["stock"]
                    return True
            outcome["result"] = ReserveResult(status="not_found")
            return False

        if not self._swap(product_id, take, quantity):
            return outcome.get("result", ReserveResult(status="not_found"))
        reservation = Reservation(product_id=product_id, variant=variant, quantity=quantity)
        return ReserveResult(status="reserved", reservation=reservation, remaining=outcome["remaining"])

    def _swap(self, product_id: str, mutate: Callable[[list], bool], sold: int,
              include_deleted: bool = False) -> bool:
        """
        Apply mutate() to the variant list under a version check, retrying on
        conflict until the ledger timeout. Returns False when mutate() refuses
        or the product is gone.
        """
        deadline = time.monotonic() + self.timeout
        attempt = 0
        while True:
            attempt += 1
            with self._bounded():
                cur = self.col.find_one({"_id": product_id})
            if cur is None or (cur.get("is_deleted") and not include_deleted):
                return False
            variants = cur.get("variants") or []
            if not mutate(variants):
                return False

            with self._bounded():
                res = self.col.update_one(
                    {"_id": product_id, "version": cur.get("version", 0)},
                    {"$set": {"variants": variants, "total_stock": sum(v["stock"] for v in variants)},
                     "$inc": {"current_amount": sold, "version": 1}},
                )
            if res.modified_count == 1:
                return True
            left = deadline - time.monotonic()
            if left <= 0:
                raise LedgerTimeout(f"Timed out after {self.timeout}s updating product {product_id}")
            LOG.debug("Version conflict on %s (attempt %d), retrying", product_id, attempt)
            time.sleep(min(self.conflict_backoff * attempt, left))

    def _restock(self, reservation):
        if reservation.variant is None:
            with self._bounded():
                res = self.col.update_one(
                    {"_id": reservation.product_id},
                    {"$inc": {"total_stock": reservation.quantity,
                              "current_amount": -reservation.quantity, "version": 1}},
                )
            if res.matched_count != 1:
                raise StorageError(f"Product {reservation.product_id} disappeared before release")
            return

        def give_back(variants):
            for v in variants:
                if v["name"] == reservation.variant:
                    v["stock"] += reservation.quantity
                    return True
            return False

        if not self._swap(reservation.product_id, give_back, -reservation.quantity, include_deleted=True):
            raise StorageError(f"Variant {reservation.variant} of {reservation.product_id} "
                               f"disappeared before release")
