from __future__ import annotations

from collections import Counter
from typing import Iterable, Mapping

from stockrecon.domain.errors import (
    InsufficientStockError,
    InvalidTransferError,
    SaleLockedError,
)
from stockrecon.domain.models import (
    PAYMENT_PAID,
    TRANSFER_CANCELLED,
    TRANSFER_CONCLUDED,
    TRANSFER_PENDING,
    SaleOrder,
    TransferItem,
    TransferOrder,
)

# action -> statuses it may start from
TRANSFER_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "confirm": (TRANSFER_PENDING,),
    "cancel": (TRANSFER_PENDING, TRANSFER_CONCLUDED),
}


def aggregate_quantities(items: Iterable[TransferItem]) -> Counter[int]:
    qty_by_product: Counter[int] = Counter()
    for it in items:
        qty_by_product[int(it.product_id)] += int(it.quantity)
    return qty_by_product


def transfer_shape_problem(origin: int, destination: int, items: Iterable[TransferItem]) -> str | None:
    items = list(items)
    if int(origin) == int(destination):
        return "Origin and destination locations must be different."
    if not items:
        return "Transfer must contain at least one item."
    for it in items:
        if int(it.quantity) <= 0:
            return f"Quantity for product {it.product_id} must be > 0."
    return None


class ValidationGuard:
    """Policy checks consulted before any mutation. Reads stock, never writes it."""

    def __init__(self, ledger):
        self.ledger = ledger

    def sufficient_stock(self, product_id: int, location_id: int, required_qty: int) -> bool:
        return self.ledger.get(product_id, location_id) >= int(required_qty)

    def require_sufficient_stock(self, product_id: int, location_id: int, required_qty: int) -> None:
        available = self.ledger.get(product_id, location_id)
        if int(required_qty) > available:
            raise InsufficientStockError(product_id, location_id, required_qty, available)

    def require_sufficient_for_all(self, location_id: int, required: Mapping[int, int]) -> None:
        for product_id, qty in required.items():
            if qty > 0:
                self.require_sufficient_stock(product_id, location_id, qty)

    @staticmethod
    def valid_transfer_shape(origin: int, destination: int, items: Iterable[TransferItem]) -> bool:
        return transfer_shape_problem(origin, destination, items) is None

    @staticmethod
    def require_valid_transfer_shape(origin: int, destination: int, items: Iterable[TransferItem]) -> None:
        problem = transfer_shape_problem(origin, destination, items)
        if problem:
            raise InvalidTransferError(problem)

    @staticmethod
    def require_transition(transfer: TransferOrder, action: str) -> None:
        allowed = TRANSFER_TRANSITIONS.get(action, ())
        if transfer.status not in allowed:
            if transfer.status == TRANSFER_CANCELLED:
                raise InvalidTransferError(f"Transfer {transfer.id} is cancelled; cannot {action}.")
            raise InvalidTransferError(f"Cannot {action} transfer {transfer.id} in status '{transfer.status}'.")

    @staticmethod
    def is_locked(sale: SaleOrder) -> bool:
        return sale.payment_status == PAYMENT_PAID

    @classmethod
    def require_unlocked(cls, sale: SaleOrder) -> None:
        if cls.is_locked(sale):
            raise SaleLockedError(sale.id)
