from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from stockrecon.domain.models import SYSTEM_ACTOR, HistoryEntry

log = logging.getLogger("stockrecon.history")


class HistoryRecorder:
    """Best-effort movement log. Never a correctness dependency of the ledger."""

    def __init__(self, repo):
        self.repo = repo

    def record(self, entry: HistoryEntry) -> Optional[int]:
        if entry.previous_qty == entry.new_qty:
            return None
        if not entry.datetime or not entry.actor:
            entry = replace(
                entry,
                datetime=entry.datetime or datetime.now().replace(microsecond=0).isoformat(sep=" "),
                actor=entry.actor or SYSTEM_ACTOR,
            )
        try:
            return self.repo.append_history(entry)
        except Exception:
            # the stock mutation already happened; losing its log line is acceptable
            log.warning(
                "history_record_failed product=%s location=%s delta=%s op=%s",
                entry.product_id,
                entry.location_id,
                entry.delta,
                entry.operation_type,
                exc_info=True,
            )
            return None

    def recent(self, product_id: int | None = None, location_id: int | None = None, limit: int = 100) -> list[HistoryEntry]:
        return self.repo.list_history(product_id=product_id, location_id=location_id, limit=limit)
