from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime


log = logging.getLogger("stockrecon.operations")


@dataclass(frozen=True)
class HealthReport:
    store_integrity: str
    negative_rows: int
    claimed_transfers: int
    claimed_sales: int
    generated_at: str

    @property
    def healthy(self) -> bool:
        return (
            self.store_integrity == "ok"
            and self.negative_rows == 0
            and self.claimed_transfers == 0
            and self.claimed_sales == 0
        )


class OperationsService:
    def __init__(self, repo):
        self.repo = repo

    def run_health_check(self) -> HealthReport:
        """Orders still holding a claim are either in flight or awaiting resolve_*."""
        report = HealthReport(
            store_integrity=self.repo.integrity_check(),
            negative_rows=int(self.repo.count_negative_stock_rows()),
            claimed_transfers=int(self.repo.count_claimed_transfers()),
            claimed_sales=int(self.repo.count_claimed_sales()),
            generated_at=datetime.now().isoformat(timespec="seconds"),
        )
        if report.healthy:
            log.info("health_check ok")
        else:
            log.warning(
                "health_check integrity=%s negative_rows=%s claimed_transfers=%s claimed_sales=%s",
                report.store_integrity,
                report.negative_rows,
                report.claimed_transfers,
                report.claimed_sales,
            )
        return report
