from .history_service import HistoryRecorder
from .stock_ledger import StockLedger
from .validation import ValidationGuard
from .inventory_service import InventoryService
from .transfer_service import TransferService, CancelOutcome
from .sales_service import SalesService
from .excel_service import ExcelService
from .reporting_service import ReportingService
from .operations_service import OperationsService, HealthReport

__all__ = [
    "HistoryRecorder",
    "StockLedger",
    "ValidationGuard",
    "InventoryService",
    "TransferService",
    "CancelOutcome",
    "SalesService",
    "ExcelService",
    "ReportingService",
    "OperationsService",
    "HealthReport",
]
