from __future__ import annotations

import logging
from typing import Optional

from stockrecon.domain.errors import ConcurrentModificationError, ValidationError
from stockrecon.domain.models import OP_MANUAL_ADJUSTMENT, HistoryEntry, StockLevel

log = logging.getLogger("stockrecon.ledger")


class StockLedger:
    """Owns per-(product, location) quantities. Every stock mutation goes through here.

    The ledger only knows debit and credit on a single key; moving stock between
    locations is composed by the callers.
    """

    def __init__(self, repo, history=None, cas_retries: int = 5):
        self.repo = repo
        self.history = history
        self.cas_retries = int(cas_retries)

    def get(self, product_id: int, location_id: int) -> int:
        return int(self.repo.get_stock_level(int(product_id), int(location_id)))

    def levels(self, product_id: int | None = None, location_id: int | None = None) -> list[StockLevel]:
        return self.repo.list_stock_levels(product_id=product_id, location_id=location_id)

    def total(self, product_id: int) -> int:
        return sum(s.quantity for s in self.levels(product_id=product_id))

    def adjust(
        self,
        product_id: int,
        location_id: int,
        delta: int,
        operation_type: str = OP_MANUAL_ADJUSTMENT,
        actor: Optional[str] = None,
        note: Optional[str] = None,
    ) -> int:
        """Apply delta atomically. Raises NegativeStockResultError without mutating if the result would be < 0."""
        delta = int(delta)
        new_qty = int(self.repo.adjust_stock(int(product_id), int(location_id), delta))
        log.info(
            "stock_adjusted product=%s location=%s delta=%s new_qty=%s op=%s",
            product_id,
            location_id,
            delta,
            new_qty,
            operation_type,
        )
        self._record(product_id, location_id, new_qty - delta, new_qty, operation_type, actor, note)
        return new_qty

    def set_quantity(
        self,
        product_id: int,
        location_id: int,
        quantity: int,
        operation_type: str = OP_MANUAL_ADJUSTMENT,
        actor: Optional[str] = None,
        note: Optional[str] = None,
    ) -> int:
        """Set an absolute counted quantity using compare-and-set with bounded retry."""
        quantity = int(quantity)
        if quantity < 0:
            raise ValidationError("Counted quantity must be >= 0.")
        for attempt in range(1, self.cas_retries + 1):
            current = self.get(product_id, location_id)
            if self.repo.compare_and_set_stock(int(product_id), int(location_id), current, quantity):
                log.info(
                    "stock_set product=%s location=%s previous=%s new_qty=%s attempt=%s",
                    product_id,
                    location_id,
                    current,
                    quantity,
                    attempt,
                )
                self._record(product_id, location_id, current, quantity, operation_type, actor, note)
                return quantity
            log.warning("stock_set_conflict product=%s location=%s attempt=%s", product_id, location_id, attempt)
        raise ConcurrentModificationError(
            f"Stock for product {product_id} at location {location_id} kept changing; "
            f"gave up after {self.cas_retries} attempts."
        )

    def _record(self, product_id, location_id, previous_qty, new_qty, operation_type, actor, note) -> None:
        if self.history is None:
            return
        self.history.record(
            HistoryEntry(
                product_id=int(product_id),
                location_id=int(location_id),
                previous_qty=int(previous_qty),
                new_qty=int(new_qty),
                delta=int(new_qty) - int(previous_qty),
                operation_type=operation_type,
                actor=actor or "",
                note=note,
            )
        )
