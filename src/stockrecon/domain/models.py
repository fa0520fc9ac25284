from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

TRANSFER_PENDING = "pending"
TRANSFER_CONCLUDED = "concluded"
TRANSFER_CANCELLED = "cancelled"
TRANSFER_STATUSES = (TRANSFER_PENDING, TRANSFER_CONCLUDED, TRANSFER_CANCELLED)

PAYMENT_PENDING = "pending"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"
PAYMENT_CREDIT = "credit"
PAYMENT_OVERDUE = "overdue"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_RETURNED = "returned"
PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_PARTIAL,
    PAYMENT_PAID,
    PAYMENT_CREDIT,
    PAYMENT_OVERDUE,
    PAYMENT_CANCELLED,
    PAYMENT_RETURNED,
)

OP_SALE = "sale"
OP_SALE_EDIT = "sale_edit"
OP_SALE_RETURN = "sale_return"
OP_TRANSFER = "transfer"
OP_TRANSFER_REVERSAL = "transfer_reversal"
OP_STOCK_ENTRY = "stock_entry"
OP_MANUAL_ADJUSTMENT = "manual_adjustment"
OP_STOCK_COUNT_IMPORT = "stock_count_import"
OPERATION_TYPES = (
    OP_SALE,
    OP_SALE_EDIT,
    OP_SALE_RETURN,
    OP_TRANSFER,
    OP_TRANSFER_REVERSAL,
    OP_STOCK_ENTRY,
    OP_MANUAL_ADJUSTMENT,
    OP_STOCK_COUNT_IMPORT,
)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class Location:
    id: int
    name: str


@dataclass(frozen=True)
class Product:
    id: int
    sku: str
    name: str
    unit_price: float
    active: int = 1


@dataclass(frozen=True)
class StockLevel:
    product_id: int
    location_id: int
    quantity: int


@dataclass(frozen=True)
class TransferItem:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class TransferOrder:
    id: int
    origin_location_id: int
    destination_location_id: int
    status: str
    items: tuple[TransferItem, ...]
    created_at: str
    updated_at: str
    actor: Optional[str] = None
    notes: Optional[str] = None
    claim_token: Optional[str] = None


@dataclass(frozen=True)
class SaleItem:
    product_id: int
    quantity: int
    unit_price: float
    line_discount: float = 0.0

    @property
    def subtotal(self) -> float:
        return round(self.quantity * self.unit_price - self.line_discount, 2)


@dataclass(frozen=True)
class SaleTotals:
    gross: float
    item_discounts: float
    order_discount: float
    net: float
    amount_paid: float
    remaining: float


@dataclass(frozen=True)
class SaleOrder:
    id: int
    location_id: int
    items: tuple[SaleItem, ...]
    payment_status: str
    totals: SaleTotals
    created_at: str
    updated_at: str
    actor: Optional[str] = None
    notes: Optional[str] = None
    claim_token: Optional[str] = None

    def quantities(self) -> dict[int, int]:
        out: dict[int, int] = {}
        for it in self.items:
            out[it.product_id] = out.get(it.product_id, 0) + it.quantity
        return out


@dataclass(frozen=True)
class HistoryEntry:
    product_id: int
    location_id: int
    previous_qty: int
    new_qty: int
    delta: int
    operation_type: str
    actor: str = SYSTEM_ACTOR
    note: Optional[str] = None
    datetime: str = ""
    id: Optional[int] = field(default=None, compare=False)
