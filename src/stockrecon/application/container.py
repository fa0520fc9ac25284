from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from stockrecon.config import Settings, get_app_paths
from stockrecon.repositories.contracts import StockStore
from stockrecon.repositories.rest_repo import RestRepository
from stockrecon.repositories.sqlite_repo import SqliteRepository
from stockrecon.services.excel_service import ExcelService
from stockrecon.services.history_service import HistoryRecorder
from stockrecon.services.inventory_service import InventoryService
from stockrecon.services.operations_service import OperationsService
from stockrecon.services.reporting_service import ReportingService
from stockrecon.services.sales_service import SalesService
from stockrecon.services.stock_ledger import StockLedger
from stockrecon.services.transfer_service import TransferService
from stockrecon.services.validation import ValidationGuard


@dataclass(frozen=True)
class AppContainer:
    repo: StockStore
    history: HistoryRecorder
    ledger: StockLedger
    guard: ValidationGuard
    inventory: InventoryService
    transfers: TransferService
    sales: SalesService
    excel: ExcelService
    reporting: ReportingService
    operations: OperationsService


def build_repository(settings: Settings) -> StockStore:
    if settings.rest_url:
        return RestRepository(settings.rest_url, api_key=settings.rest_key, timeout=settings.store_timeout)
    return SqliteRepository(settings.db_path, timeout=settings.store_timeout)


def build_container(
    db_path: Path | str | None = None,
    settings: Settings | None = None,
    restore_stock_on_delete: bool = False,
) -> AppContainer:
    if settings is None:
        if db_path is None:
            paths = get_app_paths()
            settings = Settings(db_path=paths.db_path, logs_dir=paths.logs_dir)
        else:
            settings = Settings(db_path=Path(db_path), logs_dir=Path(db_path).parent / "logs")

    repo = build_repository(settings)
    repo.init_db()

    history = HistoryRecorder(repo)
    ledger = StockLedger(repo, history=history, cas_retries=settings.cas_retries)
    guard = ValidationGuard(ledger)
    inventory = InventoryService(repo, ledger)
    transfers = TransferService(repo, ledger, guard=guard)
    sales = SalesService(repo, ledger, guard=guard, restore_stock_on_delete=restore_stock_on_delete)
    excel = ExcelService(repo, ledger)
    reporting = ReportingService(repo)
    operations = OperationsService(repo)

    return AppContainer(
        repo=repo,
        history=history,
        ledger=ledger,
        guard=guard,
        inventory=inventory,
        transfers=transfers,
        sales=sales,
        excel=excel,
        reporting=reporting,
        operations=operations,
    )
