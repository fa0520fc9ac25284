from pathlib import Path

import pytest

from conftest import seed
from stockrecon.domain.errors import (
    ConcurrentModificationError,
    InsufficientStockError,
    NotFoundError,
    PartialApplicationError,
    PersistenceError,
    SaleLockedError,
    ValidationError,
)
from stockrecon.domain.models import (
    OP_SALE,
    OP_SALE_EDIT,
    OP_SALE_RETURN,
    PAYMENT_PAID,
    PAYMENT_PARTIAL,
    PAYMENT_PENDING,
    SaleItem,
)
from stockrecon.repositories.sqlite_repo import SqliteRepository
from stockrecon.services.history_service import HistoryRecorder
from stockrecon.services.sales_service import SalesService, compute_totals
from stockrecon.services.stock_ledger import StockLedger


def _setup(repo, **kwargs):
    repo.init_db()
    (loc_l, loc_m, _other), (p1, p2) = seed(repo)
    ledger = StockLedger(repo, history=HistoryRecorder(repo))
    return SalesService(repo, ledger, **kwargs), ledger, loc_l, loc_m, p1, p2


def _line(pid, qty, price=10.0, discount=0.0):
    return {"product_id": pid, "quantity": qty, "unit_price": price, "line_discount": discount}


def test_scenario_same_location_edits_apply_net_deltas(tmp_path: Path):
    sales, ledger, loc, _m, _p1, p2 = _setup(SqliteRepository(tmp_path / "c.db"))
    ledger.adjust(p2, loc, 5)

    sid = sales.create_sale(loc, [_line(p2, 2)])
    assert ledger.get(p2, loc) == 3

    sales.edit_sale(sid, loc, [_line(p2, 3)])
    assert ledger.get(p2, loc) == 2

    edited = sales.edit_sale(sid, loc, [_line(p2, 1)])
    assert ledger.get(p2, loc) == 4
    assert edited.quantities() == {p2: 1}
    assert edited.claim_token is None

    deltas = [(h.operation_type, h.delta) for h in reversed(ledger.repo.list_history(product_id=p2))]
    assert deltas[1:] == [(OP_SALE, -2), (OP_SALE_EDIT, -1), (OP_SALE_EDIT, 2)]


def test_scenario_moving_a_sale_between_locations(tmp_path: Path):
    sales, ledger, loc_l, loc_m, p1, _p2 = _setup(SqliteRepository(tmp_path / "d.db"))
    ledger.adjust(p1, loc_l, 5)
    ledger.adjust(p1, loc_m, 4)
    sid = sales.create_sale(loc_l, [_line(p1, 2)])

    moved = sales.edit_sale(sid, loc_m, [_line(p1, 2)])

    assert moved.location_id == loc_m
    assert (ledger.get(p1, loc_l), ledger.get(p1, loc_m)) == (5, 2)


def test_scenario_move_rejected_when_new_location_is_short(tmp_path: Path):
    sales, ledger, loc_l, loc_m, p1, _p2 = _setup(SqliteRepository(tmp_path / "d2.db"))
    ledger.adjust(p1, loc_l, 5)
    ledger.adjust(p1, loc_m, 1)
    sid = sales.create_sale(loc_l, [_line(p1, 2)])

    with pytest.raises(InsufficientStockError, match=f"location {loc_m}"):
        sales.edit_sale(sid, loc_m, [_line(p1, 2)])

    assert (ledger.get(p1, loc_l), ledger.get(p1, loc_m)) == (3, 1)
    sale = sales.get_sale(sid)
    assert sale.location_id == loc_l
    assert sale.claim_token is None


def test_scenario_paid_sale_is_locked(tmp_path: Path):
    sales, ledger, loc, _m, p1, _p2 = _setup(SqliteRepository(tmp_path / "f.db"))
    ledger.adjust(p1, loc, 5)
    sid = sales.create_sale(loc, [_line(p1, 2)], payment_status=PAYMENT_PAID)
    before = sales.get_sale(sid)

    with pytest.raises(SaleLockedError):
        sales.edit_sale(sid, loc, [_line(p1, 1)])
    with pytest.raises(SaleLockedError):
        sales.delete_sale(sid)

    assert ledger.get(p1, loc) == 3
    assert sales.get_sale(sid) == before
    assert before.totals.amount_paid == before.totals.net == 20.0


def test_edit_adding_and_dropping_products(tmp_path: Path):
    sales, ledger, loc, _m, p1, p2 = _setup(SqliteRepository(tmp_path / "swap.db"))
    ledger.adjust(p1, loc, 5)
    ledger.adjust(p2, loc, 5)
    sid = sales.create_sale(loc, [_line(p1, 3)])

    sales.edit_sale(sid, loc, [_line(p2, 4)])

    assert (ledger.get(p1, loc), ledger.get(p2, loc)) == (5, 1)


def test_edit_rejected_upfront_leaves_everything_untouched(tmp_path: Path):
    sales, ledger, loc, _m, p1, p2 = _setup(SqliteRepository(tmp_path / "upfront.db"))
    ledger.adjust(p1, loc, 5)
    ledger.adjust(p2, loc, 1)
    sid = sales.create_sale(loc, [_line(p1, 2)])

    with pytest.raises(InsufficientStockError):
        sales.edit_sale(sid, loc, [_line(p1, 1), _line(p2, 3)])
    with pytest.raises(ValidationError, match="at least one item"):
        sales.edit_sale(sid, loc, [])

    assert (ledger.get(p1, loc), ledger.get(p2, loc)) == (3, 1)
    assert sales.get_sale(sid).quantities() == {p1: 2}


def test_create_sale_rejects_shortfall_without_persisting(tmp_path: Path):
    sales, ledger, loc, _m, p1, p2 = _setup(SqliteRepository(tmp_path / "short.db"))
    ledger.adjust(p1, loc, 5)
    ledger.adjust(p2, loc, 1)

    with pytest.raises(InsufficientStockError):
        sales.create_sale(loc, [_line(p1, 2), _line(p2, 1), _line(p2, 1)])
    with pytest.raises(NotFoundError):
        sales.create_sale(999, [_line(p1, 1)])

    assert sales.list_sales() == []
    assert (ledger.get(p1, loc), ledger.get(p2, loc)) == (5, 1)


class FirstDebitFailingRepo(SqliteRepository):
    failing = False

    def adjust_stock(self, product_id, location_id, delta):
        if self.failing:
            raise PersistenceError("store unreachable")
        return super().adjust_stock(product_id, location_id, delta)


def test_create_sale_drops_record_when_first_debit_fails(tmp_path: Path):
    repo = FirstDebitFailingRepo(tmp_path / "first.db")
    sales, ledger, loc, _m, p1, _p2 = _setup(repo)
    ledger.adjust(p1, loc, 5)
    repo.failing = True

    with pytest.raises(PersistenceError):
        sales.create_sale(loc, [_line(p1, 2)])

    assert sales.list_sales() == []


class SecondLocationFailingRepo(SqliteRepository):
    blocked_location = None

    def adjust_stock(self, product_id, location_id, delta):
        if location_id == self.blocked_location:
            raise PersistenceError("replica offline")
        return super().adjust_stock(product_id, location_id, delta)


def test_cross_location_edit_failing_midway_is_partial(tmp_path: Path):
    repo = SecondLocationFailingRepo(tmp_path / "partial.db")
    sales, ledger, loc_l, loc_m, p1, _p2 = _setup(repo)
    ledger.adjust(p1, loc_l, 5)
    ledger.adjust(p1, loc_m, 5)
    sid = sales.create_sale(loc_l, [_line(p1, 2)])
    repo.blocked_location = loc_m

    with pytest.raises(PartialApplicationError) as exc_info:
        sales.edit_sale(sid, loc_m, [_line(p1, 2)])

    assert exc_info.value.applied[0]["location_id"] == loc_l
    assert ledger.get(p1, loc_l) == 5
    stuck = sales.get_sale(sid)
    assert stuck.location_id == loc_l
    assert stuck.claim_token is not None
    with pytest.raises(ConcurrentModificationError):
        sales.edit_sale(sid, loc_l, [_line(p1, 1)])

    assert sales.resolve_sale(sid, actor="admin").claim_token is None


def test_delete_keeps_stock_by_default(tmp_path: Path):
    sales, ledger, loc, _m, p1, _p2 = _setup(SqliteRepository(tmp_path / "del.db"))
    ledger.adjust(p1, loc, 5)
    sid = sales.create_sale(loc, [_line(p1, 2)])

    sales.delete_sale(sid)

    with pytest.raises(NotFoundError):
        sales.get_sale(sid)
    assert ledger.get(p1, loc) == 3


def test_delete_can_restock_when_policy_enabled(tmp_path: Path):
    sales, ledger, loc, _m, p1, _p2 = _setup(SqliteRepository(tmp_path / "restock.db"), restore_stock_on_delete=True)
    ledger.adjust(p1, loc, 5)
    sid = sales.create_sale(loc, [_line(p1, 2)])

    sales.delete_sale(sid, actor="ana")

    assert ledger.get(p1, loc) == 5
    latest = ledger.repo.list_history(product_id=p1, limit=1)[0]
    assert (latest.operation_type, latest.delta, latest.actor) == (OP_SALE_RETURN, 2, "ana")


def test_payments_move_sale_to_partial_then_paid(tmp_path: Path):
    sales, ledger, loc, _m, p1, _p2 = _setup(SqliteRepository(tmp_path / "pay.db"))
    ledger.adjust(p1, loc, 5)
    sid = sales.create_sale(loc, [_line(p1, 3, price=10.0, discount=5.0)], order_discount=5.0)
    assert sales.get_sale(sid).totals.net == 20.0

    with pytest.raises(ValidationError, match="exceeds"):
        sales.register_payment(sid, 25.0)
    with pytest.raises(ValidationError):
        sales.register_payment(sid, 0)

    partial = sales.register_payment(sid, 12.5)
    assert partial.payment_status == PAYMENT_PARTIAL
    assert partial.totals.remaining == 7.5

    paid = sales.register_payment(sid, 7.5)
    assert paid.payment_status == PAYMENT_PAID
    assert paid.totals.remaining == 0
    with pytest.raises(SaleLockedError):
        sales.register_payment(sid, 1.0)


def test_edit_cannot_drop_total_below_amount_paid(tmp_path: Path):
    sales, ledger, loc, _m, p1, _p2 = _setup(SqliteRepository(tmp_path / "paid.db"))
    ledger.adjust(p1, loc, 5)
    sid = sales.create_sale(loc, [_line(p1, 3)], amount_paid=25.0)

    with pytest.raises(ValidationError, match="already paid"):
        sales.edit_sale(sid, loc, [_line(p1, 2)])

    assert ledger.get(p1, loc) == 2
    assert sales.get_sale(sid).payment_status == PAYMENT_PENDING


def test_compute_totals_rounds_and_clamps():
    items = [SaleItem(1, 3, 9.99, 0.97), SaleItem(2, 1, 5.0)]

    totals = compute_totals(items, order_discount=50.0, amount_paid=0.0)

    assert totals.gross == 34.97
    assert totals.item_discounts == 0.97
    assert totals.net == 0.0
    assert totals.remaining == 0.0


def test_line_discount_cannot_exceed_line_value(tmp_path: Path):
    sales, ledger, loc, _m, p1, _p2 = _setup(SqliteRepository(tmp_path / "disc.db"))
    ledger.adjust(p1, loc, 5)

    with pytest.raises(ValidationError, match="Discount"):
        sales.create_sale(loc, [_line(p1, 1, price=10.0, discount=11.0)])
    with pytest.raises(ValidationError, match="Unit price"):
        sales.create_sale(loc, [_line(p1, 1, price=-1.0)])
