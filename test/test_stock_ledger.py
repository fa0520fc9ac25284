import threading
from pathlib import Path

import pytest

from conftest import seed
from stockrecon.domain.errors import ConcurrentModificationError, NegativeStockResultError, ValidationError
from stockrecon.domain.models import OP_MANUAL_ADJUSTMENT, SYSTEM_ACTOR
from stockrecon.repositories.sqlite_repo import SqliteRepository
from stockrecon.services.history_service import HistoryRecorder
from stockrecon.services.stock_ledger import StockLedger


def _ledger(tmp_path: Path, name: str = "ledger.db"):
    repo = SqliteRepository(tmp_path / name)
    repo.init_db()
    (loc, _north, _south), (pid, _other) = seed(repo)
    return repo, StockLedger(repo, history=HistoryRecorder(repo)), pid, loc


def test_adjust_credits_and_debits(tmp_path: Path):
    repo, ledger, pid, loc = _ledger(tmp_path)

    assert ledger.get(pid, loc) == 0
    assert ledger.adjust(pid, loc, 7) == 7
    assert ledger.adjust(pid, loc, -3) == 4
    assert repo.get_stock_level(pid, loc) == 4


def test_adjust_below_zero_is_rejected_without_mutation(tmp_path: Path):
    repo, ledger, pid, loc = _ledger(tmp_path)
    ledger.adjust(pid, loc, 2)

    with pytest.raises(NegativeStockResultError, match="short by 3") as exc_info:
        ledger.adjust(pid, loc, -5)

    assert exc_info.value.current == 2
    assert ledger.get(pid, loc) == 2
    assert len(repo.list_history(product_id=pid)) == 1


def test_concurrent_debits_never_oversell(tmp_path: Path):
    repo, ledger, pid, loc = _ledger(tmp_path)
    ledger.adjust(pid, loc, 40)

    results = {"ok": 0, "rejected": 0}
    lock = threading.Lock()

    def worker():
        for _ in range(10):
            try:
                ledger.adjust(pid, loc, -1)
                outcome = "ok"
            except NegativeStockResultError:
                outcome = "rejected"
            with lock:
                results[outcome] += 1

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == {"ok": 40, "rejected": 20}
    assert ledger.get(pid, loc) == 0


def test_set_quantity_records_previous_and_new(tmp_path: Path):
    repo, ledger, pid, loc = _ledger(tmp_path)
    ledger.adjust(pid, loc, 5)

    assert ledger.set_quantity(pid, loc, 12, actor="counter") == 12

    latest = repo.list_history(product_id=pid, location_id=loc, limit=1)[0]
    assert (latest.previous_qty, latest.new_qty, latest.delta) == (5, 12, 7)
    assert latest.operation_type == OP_MANUAL_ADJUSTMENT
    assert latest.actor == "counter"


def test_set_quantity_rejects_negative_count(tmp_path: Path):
    _repo, ledger, pid, loc = _ledger(tmp_path)

    with pytest.raises(ValidationError):
        ledger.set_quantity(pid, loc, -1)


class AlwaysConflictingRepo(SqliteRepository):
    def compare_and_set_stock(self, product_id, location_id, expected, new):
        self.attempts = getattr(self, "attempts", 0) + 1
        return False


def test_set_quantity_gives_up_after_bounded_retries(tmp_path: Path):
    repo = AlwaysConflictingRepo(tmp_path / "cas.db")
    repo.init_db()
    (loc, _n, _s), (pid, _o) = seed(repo)
    ledger = StockLedger(repo, cas_retries=3)

    with pytest.raises(ConcurrentModificationError, match="3 attempts"):
        ledger.set_quantity(pid, loc, 4)

    assert repo.attempts == 3
    assert ledger.get(pid, loc) == 0


def test_history_defaults_actor_and_skips_noop(tmp_path: Path):
    repo, ledger, pid, loc = _ledger(tmp_path)
    ledger.adjust(pid, loc, 3)
    ledger.set_quantity(pid, loc, 3)

    entries = repo.list_history(product_id=pid)
    assert len(entries) == 1
    assert entries[0].actor == SYSTEM_ACTOR
    assert entries[0].datetime


class BrokenHistoryRepo(SqliteRepository):
    def append_history(self, entry):
        raise RuntimeError("history table unavailable")


def test_history_failure_does_not_undo_stock_change(tmp_path: Path, caplog):
    repo = BrokenHistoryRepo(tmp_path / "history.db")
    repo.init_db()
    (loc, _n, _s), (pid, _o) = seed(repo)
    ledger = StockLedger(repo, history=HistoryRecorder(repo))

    with caplog.at_level("WARNING", logger="stockrecon.history"):
        assert ledger.adjust(pid, loc, 6) == 6

    assert ledger.get(pid, loc) == 6
    assert any("history_record_failed" in r.getMessage() for r in caplog.records)
