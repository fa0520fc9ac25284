from pathlib import Path

import pytest

from conftest import interleaving_repo, seed
from stockrecon.domain.errors import ConcurrentModificationError, SaleLockedError, ValidationError
from stockrecon.domain.models import PAYMENT_PAID, PAYMENT_PARTIAL, TRANSFER_CANCELLED, TRANSFER_CONCLUDED
from stockrecon.services.history_service import HistoryRecorder
from stockrecon.services.sales_service import SalesService
from stockrecon.services.stock_ledger import StockLedger
from stockrecon.services.transfer_service import TransferService


def _setup(tmp_path: Path, name: str):
    repo = interleaving_repo(tmp_path / name)
    repo.init_db()
    (loc_a, loc_b, _other), (p1, _p2) = seed(repo)
    ledger = StockLedger(repo, history=HistoryRecorder(repo))
    return repo, ledger, SalesService(repo, ledger), TransferService(repo, ledger), loc_a, loc_b, p1


def _line(pid, qty, price=10.0):
    return {"product_id": pid, "quantity": qty, "unit_price": price}


def test_payment_landing_before_edit_claim_locks_the_edit(tmp_path: Path):
    repo, ledger, sales, _t, loc, _b, p1 = _setup(tmp_path, "edit_pay.db")
    ledger.adjust(p1, loc, 10)
    sid = sales.create_sale(loc, [_line(p1, 2)])
    repo.interleave = lambda: sales.register_payment(sid, 20.0, actor="cashier")

    with pytest.raises(SaleLockedError):
        sales.edit_sale(sid, loc, [_line(p1, 1)])

    sale = sales.get_sale(sid)
    assert sale.payment_status == PAYMENT_PAID
    assert sale.totals.amount_paid == 20.0
    assert sale.quantities() == {p1: 2}
    assert sale.claim_token is None
    assert ledger.get(p1, loc) == 8


def test_edit_landing_before_edit_claim_is_not_overwritten_with_stale_deltas(tmp_path: Path):
    repo, ledger, sales, _t, loc, _b, p1 = _setup(tmp_path, "edit_edit.db")
    ledger.adjust(p1, loc, 10)
    sid = sales.create_sale(loc, [_line(p1, 2)])
    repo.interleave = lambda: sales.edit_sale(sid, loc, [_line(p1, 5)])

    sales.edit_sale(sid, loc, [_line(p1, 3)])

    assert sales.get_sale(sid).quantities() == {p1: 3}
    assert ledger.get(p1, loc) == 7


def test_payment_landing_before_delete_claim_keeps_the_sale(tmp_path: Path):
    repo, ledger, sales, _t, loc, _b, p1 = _setup(tmp_path, "delete_pay.db")
    ledger.adjust(p1, loc, 10)
    sid = sales.create_sale(loc, [_line(p1, 2)])
    repo.interleave = lambda: sales.register_payment(sid, 20.0)

    with pytest.raises(SaleLockedError):
        sales.delete_sale(sid)

    assert sales.get_sale(sid).payment_status == PAYMENT_PAID
    assert ledger.get(p1, loc) == 8


def test_racing_payments_cannot_overpay(tmp_path: Path):
    repo, ledger, sales, _t, loc, _b, p1 = _setup(tmp_path, "pay_pay.db")
    ledger.adjust(p1, loc, 10)
    sid = sales.create_sale(loc, [_line(p1, 2)])
    repo.interleave = lambda: sales.register_payment(sid, 15.0)

    with pytest.raises(ValidationError, match="remaining 5.00"):
        sales.register_payment(sid, 10.0)

    sale = sales.get_sale(sid)
    assert sale.totals.amount_paid == 15.0
    assert sale.payment_status == PAYMENT_PARTIAL
    assert sale.claim_token is None


def test_sale_held_by_another_caller_rejects_edit_without_stock_change(tmp_path: Path):
    repo, ledger, sales, _t, loc, _b, p1 = _setup(tmp_path, "held.db")
    ledger.adjust(p1, loc, 10)
    sid = sales.create_sale(loc, [_line(p1, 2)])
    repo.interleave = lambda: repo.claim_sale(sid, "other-caller")

    with pytest.raises(ConcurrentModificationError):
        sales.edit_sale(sid, loc, [_line(p1, 4)])

    assert ledger.get(p1, loc) == 8
    assert sales.get_sale(sid).claim_token == "other-caller"


def test_confirm_losing_the_claim_moves_stock_once(tmp_path: Path):
    repo, ledger, _s, transfers, origin, dest, p1 = _setup(tmp_path, "confirm.db")
    ledger.adjust(p1, origin, 10)
    tid = transfers.create_transfer(origin, dest, [{"product_id": p1, "quantity": 4}])
    repo.interleave = lambda: transfers.confirm_transfer(tid)

    with pytest.raises(ConcurrentModificationError):
        transfers.confirm_transfer(tid)

    t = transfers.get_transfer(tid)
    assert t.status == TRANSFER_CONCLUDED
    assert t.claim_token is None
    assert (ledger.get(p1, origin), ledger.get(p1, dest)) == (6, 4)


def test_cancel_losing_the_claim_reverses_once(tmp_path: Path):
    repo, ledger, _s, transfers, origin, dest, p1 = _setup(tmp_path, "cancel.db")
    ledger.adjust(p1, origin, 10)
    tid = transfers.create_transfer(origin, dest, [{"product_id": p1, "quantity": 4}])
    transfers.confirm_transfer(tid)
    repo.interleave = lambda: transfers.cancel_transfer(tid)

    with pytest.raises(ConcurrentModificationError):
        transfers.cancel_transfer(tid)

    assert transfers.get_transfer(tid).status == TRANSFER_CANCELLED
    assert (ledger.get(p1, origin), ledger.get(p1, dest)) == (10, 0)
