from __future__ import annotations

from typing import Iterable, Optional, Protocol

from stockrecon.domain.models import (
    HistoryEntry,
    Location,
    Product,
    SaleItem,
    SaleOrder,
    StockLevel,
    TransferItem,
    TransferOrder,
)


class StockStore(Protocol):
    """Persistent store consumed by the reconciliation services.

    Every call is a blocking round-trip that may fail or time out on its own.
    Failures surface as PersistenceError; a negative stock result as NegativeStockResultError.
    """

    # ---------- Catalog ----------
    def add_location(self, name: str) -> int: ...
    def get_location(self, location_id: int) -> Optional[Location]: ...
    def list_locations(self) -> list[Location]: ...
    def add_product(self, sku: str, name: str, unit_price: float) -> int: ...
    def get_product_by_id(self, product_id: int) -> Optional[Product]: ...

    # ---------- Stock ----------
    def get_stock_level(self, product_id: int, location_id: int) -> int: ...
    def adjust_stock(self, product_id: int, location_id: int, delta: int) -> int: ...
    def compare_and_set_stock(self, product_id: int, location_id: int, expected: int, new: int) -> bool: ...
    def list_stock_levels(self, product_id: int | None = None, location_id: int | None = None) -> list[StockLevel]: ...

    # ---------- Transfers ----------
    def create_transfer(
        self,
        origin_location_id: int,
        destination_location_id: int,
        items: Iterable[TransferItem],
        created_at: str,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int: ...
    def get_transfer(self, transfer_id: int) -> Optional[TransferOrder]: ...
    def list_transfers(self, status: str | None = None) -> list[TransferOrder]: ...
    def claim_transfer(self, transfer_id: int, expected_status: str, token: str) -> bool: ...
    def release_transfer(self, transfer_id: int, token: str, status: str, updated_at: str) -> bool: ...
    def force_release_transfer(self, transfer_id: int, status: str, updated_at: str) -> bool: ...

    # ---------- Sales ----------
    def create_sale(self, sale: SaleOrder) -> int: ...
    def get_sale(self, sale_id: int) -> Optional[SaleOrder]: ...
    def list_sales(self, location_id: int | None = None) -> list[SaleOrder]: ...
    def claim_sale(self, sale_id: int, token: str) -> bool: ...
    def release_sale(self, sale_id: int, token: str, sale: SaleOrder | None = None) -> bool: ...
    def force_release_sale(self, sale_id: int) -> bool: ...
    def delete_sale(self, sale_id: int, token: str) -> bool: ...

    # ---------- History ----------
    def append_history(self, entry: HistoryEntry) -> int: ...
    def list_history(
        self, product_id: int | None = None, location_id: int | None = None, limit: int = 100
    ) -> list[HistoryEntry]: ...

    # ---------- Operations ----------
    def integrity_check(self) -> str: ...
    def count_negative_stock_rows(self) -> int: ...
    def count_claimed_transfers(self) -> int: ...
    def count_claimed_sales(self) -> int: ...


def sale_items_payload(items: Iterable[SaleItem]) -> list[dict]:
    return [
        {
            "product_id": int(it.product_id),
            "quantity": int(it.quantity),
            "unit_price": float(it.unit_price),
            "line_discount": float(it.line_discount),
        }
        for it in items
    ]


def sale_items_from_payload(rows: Iterable[dict]) -> tuple[SaleItem, ...]:
    return tuple(
        SaleItem(
            product_id=int(r["product_id"]),
            quantity=int(r["quantity"]),
            unit_price=float(r["unit_price"]),
            line_discount=float(r.get("line_discount", 0.0)),
        )
        for r in rows
    )


def transfer_items_payload(items: Iterable[TransferItem]) -> list[dict]:
    return [{"product_id": int(it.product_id), "quantity": int(it.quantity)} for it in items]


def transfer_items_from_payload(rows: Iterable[dict]) -> tuple[TransferItem, ...]:
    return tuple(TransferItem(product_id=int(r["product_id"]), quantity=int(r["quantity"])) for r in rows)
