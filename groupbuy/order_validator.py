import logging
from typing import Dict, List, Optional, Tuple, Union

from groupbuy.errors import Reason
from groupbuy.schemas import LineItem, Plan, PlanEntry, Rejected, describe
from groupbuy.stock_ledger import StockLedger

LOG = logging.getLogger("groupbuy.validator")


def valid_quantity(qty) -> bool:
    return isinstance(qty, int) and not isinstance(qty, bool) and qty >= 1


class OrderValidator:
    """
    Turns a cart into a reservation plan using read-only snapshots.

    The snapshot check is advisory: stock can still run out before the
    writer reserves it. Lines for the same product/variant are summed first
    so a large order cannot slip through as many small lines.
    """

    def __init__(self, ledger: StockLedger):
        self.ledger = ledger

    def validate(self, shop_id: str, items: List[LineItem]) -> Union[Plan, Rejected]:
        if not items:
            return self._reject(Reason.INVALID_QUANTITY, "Order must contain at least one item")

        groups: Dict[Tuple[str, Optional[str]], List[int]] = {}
        for index, item in enumerate(items):
            if not valid_quantity(item.qty):
                return self._reject(Reason.INVALID_QUANTITY,
                                    f"Quantity must be a positive whole number (line {index + 1})", index)
            key = (item.product_id, item.variant)
            if key in groups:
                groups[key][1] += item.qty
            else:
                groups[key] = [index, item.qty]

        entries = []
        total = 0.0
        for (product_id, variant), (index, quantity) in groups.items():
            product = self.ledger.get_snapshot(product_id)
            if product is None or product.is_deleted or product.shop_id != shop_id:
                return self._reject(Reason.NOT_FOUND, f"Product {product_id} is not available", index)

            label = describe(product.name, variant)
            if variant is None and product.variants:
                return self._reject(Reason.NOT_FOUND, f"Please choose a variant of {product.name}", index)
            if variant is not None and product.find_variant(variant) is None:
                return self._reject(Reason.NOT_FOUND, f"{label} is not available", index)

            available = product.available(variant)
            if quantity > available:
                return self._reject(Reason.INSUFFICIENT_STOCK,
                                    f"Not enough stock for {label}: requested {quantity}, {available} left",
                                    index)

            entries.append(PlanEntry(product_id=product_id, variant=variant, quantity=quantity,
                                     line_index=index, label=label))
            total += product.price * quantity

        return Plan(entries=entries, total_amount=round(total, 2))

    @staticmethod
    def _reject(reason: Reason, message: str, line_index: Optional[int] = None) -> Rejected:
        LOG.warning("Cart rejected: %s (%s, line=%s)", message, reason.value, line_index)
        return Rejected(reason=reason, message=message, line_index=line_index)
