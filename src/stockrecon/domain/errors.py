from __future__ import annotations

from typing import Optional


class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class AuthorizationError(AppError):
    pass


class ConcurrentModificationError(AppError):
    """Another caller currently holds the claim on the order."""


class InsufficientStockError(AppError):
    def __init__(self, product_id: int, location_id: int, requested: int, available: int):
        self.product_id = int(product_id)
        self.location_id = int(location_id)
        self.requested = int(requested)
        self.available = int(available)
        super().__init__(
            f"Not enough stock for product {self.product_id} at location {self.location_id}. "
            f"Requested: {self.requested}, available: {self.available} (short by {self.shortfall})."
        )

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.available)


class NegativeStockResultError(AppError):
    def __init__(self, product_id: int, location_id: int, current: Optional[int], delta: int):
        self.product_id = int(product_id)
        self.location_id = int(location_id)
        self.current = None if current is None else int(current)
        self.delta = int(delta)
        if self.current is None:
            detail = f"delta {self.delta} would drive stock below zero"
        else:
            detail = (
                f"current {self.current}, delta {self.delta} would leave {self.current + self.delta} "
                f"(short by {-(self.current + self.delta)})"
            )
        super().__init__(
            f"Stock for product {self.product_id} at location {self.location_id} cannot go negative: {detail}."
        )


class InvalidTransferError(AppError):
    pass


class SaleLockedError(AppError):
    def __init__(self, sale_id: int):
        self.sale_id = int(sale_id)
        super().__init__(f"Sale {self.sale_id} is paid and can no longer be edited or deleted.")


class PersistenceError(AppError):
    """The store call failed. When outcome_unknown is set the write may have been applied."""

    def __init__(self, message: str, outcome_unknown: bool = False):
        self.outcome_unknown = bool(outcome_unknown)
        super().__init__(message)


class PartialApplicationError(AppError):
    """A multi-step stock operation stopped partway; already applied steps were kept."""

    def __init__(self, operation: str, applied: list[dict], failed: dict, cause: Exception):
        self.operation = operation
        self.applied = list(applied)
        self.failed = dict(failed)
        self.cause = cause
        if "product_id" in self.failed:
            where = (
                f"failed on product {self.failed['product_id']} at location {self.failed.get('location_id')} "
                f"(delta {self.failed.get('delta')})"
            )
        else:
            where = f"failed on {self.failed.get('step', 'an unnamed step')}"
        super().__init__(f"{operation} stopped after {len(self.applied)} applied step(s); {where}: {cause}")
