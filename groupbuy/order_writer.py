import logging
import time
from typing import List, Union

from groupbuy import config
from groupbuy.errors import Reason, StorageError
from groupbuy.order_store import OrderStore
from groupbuy.schemas import Failed, Order, Plan, PlanEntry, Reservation
from groupbuy.stock_ledger import StockLedger

LOG = logging.getLogger("groupbuy.writer")


class OrderWriter:
    """
    Applies a plan's reservations and stores the order as one unit.

    Either the order record and all of its reservations exist, or neither
    does. Once the first reservation succeeds the commit runs to the end
    (stored or rolled back). A release that keeps failing is reported on the
    returned Failed so the caller does not pile new reservations on top.
    """

    def __init__(self, ledger: StockLedger, order_store: OrderStore,
                 release_attempts: int = config.RELEASE_ATTEMPTS,
                 backoff: float = config.ORDER_RETRY_BACKOFF):
        self.ledger = ledger
        self.order_store = order_store
        self.release_attempts = max(1, release_attempts)
        self.backoff = backoff

    def commit(self, order: Order, plan: Plan) -> Union[str, Failed]:
        applied: List[Reservation] = []

        for entry in plan.entries:
            try:
                result = self.ledger.try_reserve(entry.product_id, entry.variant, entry.quantity)
            except StorageError as e:
                LOG.warning("Reservation for %s failed on storage: %s", entry.label, e)
                return Failed(reason=Reason.PERSISTENCE_ERROR, message=str(e), line_index=entry.line_index,
                              rollback_complete=self._rollback(order.order_id, applied))

            if result.status != "reserved":
                failure = self._stock_failure(entry, result.status, result.remaining)
                if not self._rollback(order.order_id, applied):
                    return Failed(reason=Reason.PERSISTENCE_ERROR, message=failure.message,
                                  line_index=entry.line_index, rollback_complete=False)
                return failure
            applied.append(result.reservation)

        stored = order.model_copy(update={"status": "pending_payment", "total_amount": plan.total_amount})
        try:
            self.order_store.insert(stored)
        except StorageError as e:
            LOG.warning("Storing order %s failed: %s", order.order_id, e)
            return Failed(reason=Reason.PERSISTENCE_ERROR, message=str(e),
                          rollback_complete=self._rollback(order.order_id, applied))

        for reservation in applied:
            self.ledger.confirm(reservation)
        LOG.info("Committed order %s (%d lines, total=%.2f)", order.order_id, len(applied), plan.total_amount)
        return order.order_id

    def _rollback(self, order_id: str, applied: List[Reservation]) -> bool:
        """Release in reverse order. Returns False if any reservation is still held."""
        if applied:
            LOG.warning("Rolling back %d reservation(s) of order %s", len(applied), order_id)
        complete = True
        for reservation in reversed(applied):
            if not self._release(reservation):
                complete = False
        return complete

    def _release(self, reservation: Reservation) -> bool:
        for attempt in range(1, self.release_attempts + 1):
            try:
                self.ledger.release(reservation)
                return True
            except StorageError as e:
                LOG.warning("Release of %s failed (attempt %d/%d): %s",
                            reservation.reservation_id, attempt, self.release_attempts, e)
                if attempt < self.release_attempts:
                    time.sleep(self.backoff * attempt)
        LOG.error("Compensation failed for reservation %s (%s/%s x%d), stock left held",
                  reservation.reservation_id, reservation.product_id,
                  reservation.variant or "-", reservation.quantity)
        return False

    @staticmethod
    def _stock_failure(entry: PlanEntry, status: str, remaining: int) -> Failed:
        if status == "not_found":
            return Failed(reason=Reason.NOT_FOUND, message=f"{entry.label} is no longer available",
                          line_index=entry.line_index)
        return Failed(reason=Reason.INSUFFICIENT_STOCK,
                      message=f"Not enough stock for {entry.label}: requested {entry.quantity}, {remaining} left",
                      line_index=entry.line_index)
