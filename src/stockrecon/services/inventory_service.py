from __future__ import annotations

import logging
from typing import Optional

from stockrecon.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from stockrecon.domain.models import OP_MANUAL_ADJUSTMENT, OP_STOCK_ENTRY, Location, Product, StockLevel

log = logging.getLogger("stockrecon.inventory")


class InventoryService:
    def __init__(self, repo, ledger):
        self.repo = repo
        self.ledger = ledger

    def list_locations(self) -> list[Location]:
        return self.repo.list_locations()

    def add_location(self, name: str) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Location name is required.")
        location_id = self.repo.add_location(name)
        log.info("location_added location_id=%s name=%s", location_id, name)
        return location_id

    def add_product(self, sku: str, name: str, unit_price: float) -> int:
        sku = (sku or "").strip()
        name = (name or "").strip()
        if not sku or not name:
            raise ValidationError("SKU and Name are required.")
        if unit_price < 0:
            raise ValidationError("Price must be >= 0.")
        return self.repo.add_product(sku, name, float(unit_price))

    def get_product(self, product_id: int) -> Product:
        p = self.repo.get_product_by_id(int(product_id))
        if not p:
            raise NotFoundError("Product not found.")
        return p

    def receive_stock(self, product_id: int, location_id: int, qty: int, actor: Optional[str] = None, notes: Optional[str] = None) -> int:
        if qty <= 0:
            raise ValidationError("Quantity to receive must be > 0.")
        self._require_pair(product_id, location_id)
        return self.ledger.adjust(product_id, location_id, int(qty), operation_type=OP_STOCK_ENTRY, actor=actor, note=notes)

    def remove_stock(self, product_id: int, location_id: int, qty: int, actor: Optional[str] = None, notes: Optional[str] = None) -> int:
        if qty <= 0:
            raise ValidationError("Quantity to remove must be > 0.")
        self._require_pair(product_id, location_id)
        available = self.ledger.get(product_id, location_id)
        if qty > available:
            raise InsufficientStockError(product_id, location_id, qty, available)
        return self.ledger.adjust(product_id, location_id, -int(qty), operation_type=OP_MANUAL_ADJUSTMENT, actor=actor, note=notes)

    def set_stock(self, product_id: int, location_id: int, qty: int, actor: Optional[str] = None, notes: Optional[str] = None) -> int:
        self._require_pair(product_id, location_id)
        return self.ledger.set_quantity(product_id, location_id, int(qty), operation_type=OP_MANUAL_ADJUSTMENT, actor=actor, note=notes)

    def stock_by_location(self, location_id: int) -> list[StockLevel]:
        if not self.repo.get_location(int(location_id)):
            raise NotFoundError("Location not found.")
        return self.ledger.levels(location_id=int(location_id))

    def total_stock(self, product_id: int) -> int:
        self.get_product(product_id)
        return self.ledger.total(int(product_id))

    def _require_pair(self, product_id: int, location_id: int) -> None:
        self.get_product(product_id)
        if not self.repo.get_location(int(location_id)):
            raise NotFoundError("Location not found.")
