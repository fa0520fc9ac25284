from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from stockrecon.domain.errors import AppError, AuthorizationError

log = logging.getLogger("stockrecon.api")


class Authorizer(Protocol):
    def can_perform(self, actor: Optional[str], action: str, resource: str) -> bool:
        ...


class AllowAll:
    def can_perform(self, actor: Optional[str], action: str, resource: str) -> bool:
        return True


@dataclass(frozen=True)
class Result:
    ok: bool
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, exc: Exception) -> "Result":
        return cls(ok=False, error=str(exc), error_type=type(exc).__name__)


class StockApi:
    """Caller-facing entry points. Domain failures come back as Result values; anything else propagates."""

    def __init__(self, container, authorizer: Authorizer | None = None):
        self.c = container
        self.authorizer = authorizer or AllowAll()

    def _call(self, actor: Optional[str], action: str, resource: str, fn: Callable[[], Any]) -> Result:
        try:
            if not self.authorizer.can_perform(actor, action, resource):
                raise AuthorizationError(f"{actor or 'anonymous'} may not {action} {resource}.")
            return Result.success(fn())
        except AppError as e:
            log.warning("api_rejected action=%s resource=%s actor=%s error=%s: %s", action, resource, actor, type(e).__name__, e)
            return Result.failure(e)

    # ---------- Stock ----------
    def get_stock_level(self, product_id: int, location_id: int, actor: Optional[str] = None) -> Result:
        return self._call(actor, "read", "stock", lambda: self.c.ledger.get(product_id, location_id))

    def receive_stock(self, product_id: int, location_id: int, qty: int, actor: Optional[str] = None, notes: Optional[str] = None) -> Result:
        return self._call(actor, "write", "stock", lambda: self.c.inventory.receive_stock(product_id, location_id, qty, actor=actor, notes=notes))

    def set_stock(self, product_id: int, location_id: int, qty: int, actor: Optional[str] = None, notes: Optional[str] = None) -> Result:
        return self._call(actor, "write", "stock", lambda: self.c.inventory.set_stock(product_id, location_id, qty, actor=actor, notes=notes))

    def history(self, product_id: int | None = None, location_id: int | None = None, limit: int = 100, actor: Optional[str] = None) -> Result:
        return self._call(actor, "read", "history", lambda: self.c.history.recent(product_id, location_id, limit))

    # ---------- Transfers ----------
    def list_transfers(self, status: str | None = None, actor: Optional[str] = None) -> Result:
        return self._call(actor, "read", "transfer", lambda: self.c.transfers.list_transfers(status))

    def create_transfer(self, origin_location_id: int, destination_location_id: int, items, actor: Optional[str] = None, notes: Optional[str] = None) -> Result:
        return self._call(
            actor,
            "create",
            "transfer",
            lambda: self.c.transfers.create_transfer(origin_location_id, destination_location_id, items, actor=actor, notes=notes),
        )

    def confirm_transfer(self, transfer_id: int, actor: Optional[str] = None) -> Result:
        return self._call(actor, "confirm", "transfer", lambda: self.c.transfers.confirm_transfer(transfer_id, actor=actor))

    def cancel_transfer(self, transfer_id: int, actor: Optional[str] = None) -> Result:
        return self._call(actor, "cancel", "transfer", lambda: self.c.transfers.cancel_transfer(transfer_id, actor=actor))

    def resolve_transfer(self, transfer_id: int, status: str, actor: Optional[str] = None) -> Result:
        return self._call(actor, "resolve", "transfer", lambda: self.c.transfers.resolve_transfer(transfer_id, status, actor=actor))

    # ---------- Sales ----------
    def create_sale(self, location_id: int, items, actor: Optional[str] = None, **kwargs) -> Result:
        return self._call(actor, "create", "sale", lambda: self.c.sales.create_sale(location_id, items, actor=actor, **kwargs))

    def edit_sale(self, sale_id: int, new_location_id: int, new_items, actor: Optional[str] = None, **kwargs) -> Result:
        return self._call(actor, "edit", "sale", lambda: self.c.sales.edit_sale(sale_id, new_location_id, new_items, actor=actor, **kwargs))

    def delete_sale(self, sale_id: int, actor: Optional[str] = None) -> Result:
        return self._call(actor, "delete", "sale", lambda: self.c.sales.delete_sale(sale_id, actor=actor))

    def register_payment(self, sale_id: int, amount: float, actor: Optional[str] = None) -> Result:
        return self._call(actor, "pay", "sale", lambda: self.c.sales.register_payment(sale_id, amount, actor=actor))

    def resolve_sale(self, sale_id: int, actor: Optional[str] = None) -> Result:
        return self._call(actor, "resolve", "sale", lambda: self.c.sales.resolve_sale(sale_id, actor=actor))

    # ---------- Operations ----------
    def health(self, actor: Optional[str] = None) -> Result:
        return self._call(actor, "read", "operations", self.c.operations.run_health_check)
