from .models import (
    Location,
    Product,
    StockLevel,
    TransferItem,
    TransferOrder,
    SaleItem,
    SaleTotals,
    SaleOrder,
    HistoryEntry,
)
from .errors import (
    AppError,
    ValidationError,
    NotFoundError,
    AuthorizationError,
    ConcurrentModificationError,
    InsufficientStockError,
    NegativeStockResultError,
    InvalidTransferError,
    SaleLockedError,
    PersistenceError,
    PartialApplicationError,
)

__all__ = [
    "Location",
    "Product",
    "StockLevel",
    "TransferItem",
    "TransferOrder",
    "SaleItem",
    "SaleTotals",
    "SaleOrder",
    "HistoryEntry",
    "AppError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "ConcurrentModificationError",
    "InsufficientStockError",
    "NegativeStockResultError",
    "InvalidTransferError",
    "SaleLockedError",
    "PersistenceError",
    "PartialApplicationError",
]
