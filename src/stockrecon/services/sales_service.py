from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Optional

from stockrecon.domain.errors import (
    AppError,
    ConcurrentModificationError,
    NotFoundError,
    PartialApplicationError,
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
    PAYMENT_STATUSES,
    SaleItem,
    SaleOrder,
    SaleTotals,
)
from stockrecon.services.saga import StepTracker
from stockrecon.services.validation import ValidationGuard

log = logging.getLogger("stockrecon.sales")


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def normalize_sale_items(items: Iterable) -> list[SaleItem]:
    """
    items: SaleItem or {product_id, quantity, unit_price, line_discount?}
    """
    out: list[SaleItem] = []
    for it in items:
        if not isinstance(it, SaleItem):
            try:
                it = SaleItem(
                    product_id=int(it["product_id"]),
                    quantity=int(it["quantity"]),
                    unit_price=float(it["unit_price"]),
                    line_discount=float(it.get("line_discount") or 0.0),
                )
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                raise ValidationError(f"Invalid sale item: {it!r}") from exc
        if it.quantity <= 0:
            raise ValidationError("Qty must be >= 1.")
        if it.unit_price < 0:
            raise ValidationError("Unit price must be >= 0.")
        if it.line_discount < 0 or it.line_discount > it.quantity * it.unit_price:
            raise ValidationError(f"Discount for product {it.product_id} must be between 0 and the line value.")
        out.append(it)
    return out


def quantities_by_product(items: Iterable[SaleItem]) -> dict[int, int]:
    out: dict[int, int] = {}
    for it in items:
        out[it.product_id] = out.get(it.product_id, 0) + it.quantity
    return out


def compute_totals(items: Iterable[SaleItem], order_discount: float = 0.0, amount_paid: float = 0.0) -> SaleTotals:
    items = list(items)
    gross = round(sum(it.quantity * it.unit_price for it in items), 2)
    item_discounts = round(sum(it.line_discount for it in items), 2)
    net = round(max(0.0, gross - item_discounts - float(order_discount)), 2)
    return SaleTotals(
        gross=gross,
        item_discounts=item_discounts,
        order_discount=round(float(order_discount), 2),
        net=net,
        amount_paid=round(float(amount_paid), 2),
        remaining=round(max(0.0, net - float(amount_paid)), 2),
    )


class SalesService:
    """Keeps location stock in step with sale creation, edits and deletion.

    Deleting a sale does not give its units back unless restore_stock_on_delete is set;
    deletions are treated as administrative corrections whose stock is fixed by hand.
    """

    def __init__(
        self,
        repo,
        ledger,
        guard: ValidationGuard | None = None,
        token_factory: Callable[[], str] | None = None,
        restore_stock_on_delete: bool = False,
    ):
        self.repo = repo
        self.ledger = ledger
        self.guard = guard or ValidationGuard(ledger)
        self.token_factory = token_factory or (lambda: uuid.uuid4().hex)
        self.restore_stock_on_delete = bool(restore_stock_on_delete)

    def get_sale(self, sale_id: int) -> SaleOrder:
        sale = self.repo.get_sale(int(sale_id))
        if not sale:
            raise NotFoundError(f"Sale {sale_id} not found.")
        return sale

    def list_sales(self, location_id: int | None = None) -> list[SaleOrder]:
        return self.repo.list_sales(location_id)

    def create_sale(
        self,
        location_id: int,
        items: Iterable,
        payment_status: str = PAYMENT_PENDING,
        order_discount: float = 0.0,
        amount_paid: float = 0.0,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        items = normalize_sale_items(items)
        if not items:
            raise ValidationError("Cart is empty.")
        if payment_status not in PAYMENT_STATUSES:
            raise ValidationError(f"Unknown payment status: {payment_status}")
        self._require_catalog(location_id, items)

        totals = compute_totals(items, order_discount, amount_paid)
        self._validate_money(totals)
        if payment_status == PAYMENT_PAID and totals.amount_paid == 0:
            totals = compute_totals(items, order_discount, totals.net)

        qty_by_product = quantities_by_product(items)
        self.guard.require_sufficient_for_all(int(location_id), qty_by_product)

        token = self.token_factory()
        now = _now_iso()
        sale_id = self.repo.create_sale(
            SaleOrder(
                id=0,
                location_id=int(location_id),
                items=tuple(items),
                payment_status=payment_status,
                totals=totals,
                created_at=now,
                updated_at=now,
                actor=actor,
                notes=notes,
                claim_token=token,
            )
        )

        tracker = StepTracker(f"create_sale {sale_id}", log)
        try:
            for it in items:
                tracker.run(self.ledger, it.product_id, location_id, -it.quantity, operation_type=OP_SALE, actor=actor, note=f"sale {sale_id}")
        except PartialApplicationError:
            raise
        except Exception:
            # nothing was debited; the sale must not exist without its stock movement
            self.repo.delete_sale(sale_id, token)
            raise
        self._release(sale_id, token)

        log.info("sale_created sale_id=%s location=%s items=%s net=%.2f actor=%s", sale_id, location_id, len(items), totals.net, actor)
        return sale_id

    def edit_sale(
        self,
        sale_id: int,
        new_location_id: int,
        new_items: Iterable,
        order_discount: float | None = None,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> SaleOrder:
        new_items = normalize_sale_items(new_items)
        if not new_items:
            raise ValidationError("A sale must keep at least one item. Delete the sale instead.")
        self._require_catalog(new_location_id, new_items)
        new_location_id = int(new_location_id)

        # the read taken under the claim is the pre-edit state; every delta is computed against it
        token, original = self._claim(sale_id)
        try:
            self.guard.require_unlocked(original)
            discount = original.totals.order_discount if order_discount is None else order_discount
            totals = compute_totals(new_items, discount, original.totals.amount_paid)
            if totals.amount_paid > totals.net:
                raise ValidationError(
                    f"Edited total {totals.net:.2f} is below the amount already paid {totals.amount_paid:.2f}."
                )
            self._validate_money(totals)

            original_qty = original.quantities()
            new_qty = quantities_by_product(new_items)
            if new_location_id == original.location_id:
                steps = self._same_location_steps(original.location_id, original_qty, new_qty)
            else:
                steps = self._cross_location_steps(original.location_id, new_location_id, original_qty, new_qty)

            # every debit is checked up front so a rejected edit leaves all locations untouched
            for product_id, location_id, delta in steps:
                if delta < 0:
                    self.guard.require_sufficient_stock(product_id, location_id, -delta)
        except Exception:
            self._release(original.id, token)
            raise

        tracker = StepTracker(f"edit_sale {original.id}", log)
        try:
            for product_id, location_id, delta in steps:
                tracker.run(self.ledger, product_id, location_id, delta, operation_type=OP_SALE_EDIT, actor=actor, note=f"edit of sale {original.id}")
        except PartialApplicationError:
            # claim stays: the sale is frozen until resolve_sale
            raise
        except Exception:
            self._release(original.id, token)
            raise

        updated = replace(
            original,
            location_id=new_location_id,
            items=tuple(new_items),
            totals=totals,
            updated_at=_now_iso(),
            notes=original.notes if notes is None else notes,
            claim_token=None,
        )
        self._release(original.id, token, updated, tracker)
        log.info(
            "sale_edited sale_id=%s location=%s->%s steps=%s actor=%s",
            original.id,
            original.location_id,
            new_location_id,
            len(tracker.applied),
            actor,
        )
        return self.get_sale(original.id)

    def delete_sale(self, sale_id: int, actor: Optional[str] = None) -> None:
        token, sale = self._claim(sale_id)
        try:
            self.guard.require_unlocked(sale)
        except SaleLockedError:
            self._release(sale.id, token)
            raise

        tracker = StepTracker(f"delete_sale {sale.id}", log)
        if self.restore_stock_on_delete:
            try:
                for product_id, qty in sale.quantities().items():
                    tracker.run(self.ledger, product_id, sale.location_id, qty, operation_type=OP_SALE_RETURN, actor=actor, note=f"deleted sale {sale.id}")
            except PartialApplicationError:
                raise
            except Exception:
                self._release(sale.id, token)
                raise

        try:
            deleted = self.repo.delete_sale(sale.id, token)
        except Exception as exc:
            if not tracker.applied:
                raise
            err = PartialApplicationError(tracker.operation, tracker.applied, {"step": "sale record delete"}, exc)
            log.error("partial_application %s", err)
            raise err from exc
        if not deleted:
            raise ConcurrentModificationError(f"Sale {sale.id} claim was lost before deletion.")

        if self.restore_stock_on_delete:
            log.info("sale_deleted sale_id=%s restocked=True actor=%s", sale.id, actor)
        else:
            log.warning("sale_deleted sale_id=%s restocked=False units=%s actor=%s", sale.id, sum(sale.quantities().values()), actor)

    def register_payment(self, sale_id: int, amount: float, actor: Optional[str] = None) -> SaleOrder:
        amount = round(float(amount), 2)
        if amount <= 0:
            raise ValidationError("Payment amount must be > 0.")

        token, sale = self._claim(sale_id)
        try:
            if sale.payment_status == PAYMENT_PAID:
                raise SaleLockedError(sale.id)
            if amount > sale.totals.remaining:
                raise ValidationError(f"Payment {amount:.2f} exceeds the remaining {sale.totals.remaining:.2f}.")
        except AppError:
            self._release(sale.id, token)
            raise

        totals = compute_totals(sale.items, sale.totals.order_discount, sale.totals.amount_paid + amount)
        status = PAYMENT_PAID if totals.remaining == 0 else PAYMENT_PARTIAL
        updated = replace(sale, totals=totals, payment_status=status, updated_at=_now_iso(), claim_token=None)
        self._release(sale.id, token, updated)
        log.info("sale_payment sale_id=%s amount=%.2f remaining=%.2f status=%s actor=%s", sale.id, amount, totals.remaining, status, actor)
        return self.get_sale(sale.id)

    def resolve_sale(self, sale_id: int, actor: Optional[str] = None) -> SaleOrder:
        """Manual correction after a partial application: drop the claim, keep the record as stored."""
        sale = self.get_sale(sale_id)
        if not sale.claim_token:
            raise ValidationError(f"Sale {sale.id} is not awaiting manual resolution.")
        self.repo.force_release_sale(sale.id)
        log.warning("sale_resolved sale_id=%s actor=%s", sale.id, actor)
        return self.get_sale(sale.id)

    # ---------- internals ----------
    @staticmethod
    def _same_location_steps(location_id: int, original_qty: dict[int, int], new_qty: dict[int, int]):
        steps = []
        for product_id in list(original_qty) + [p for p in new_qty if p not in original_qty]:
            delta = new_qty.get(product_id, 0) - original_qty.get(product_id, 0)
            if delta:
                # more units sold means less stock
                steps.append((product_id, location_id, -delta))
        return steps

    @staticmethod
    def _cross_location_steps(old_location_id: int, new_location_id: int, original_qty: dict[int, int], new_qty: dict[int, int]):
        restores = [(product_id, old_location_id, qty) for product_id, qty in original_qty.items()]
        debits = [(product_id, new_location_id, -qty) for product_id, qty in new_qty.items()]
        return restores + debits

    def _require_catalog(self, location_id: int, items: list[SaleItem]) -> None:
        if not self.repo.get_location(int(location_id)):
            raise NotFoundError(f"Location {location_id} not found.")
        for product_id in quantities_by_product(items):
            if not self.repo.get_product_by_id(product_id):
                raise NotFoundError(f"Product {product_id} not found.")

    def _validate_money(self, totals: SaleTotals) -> None:
        if totals.order_discount < 0:
            raise ValidationError("Order discount must be >= 0.")
        if totals.amount_paid < 0:
            raise ValidationError("Amount paid must be >= 0.")
        if totals.amount_paid > totals.net:
            raise ValidationError(f"Amount paid {totals.amount_paid:.2f} exceeds the sale total {totals.net:.2f}.")

    def _require_unclaimed(self, sale: SaleOrder) -> None:
        if sale.claim_token:
            raise ConcurrentModificationError(f"Sale {sale.id} is being processed or awaits manual resolution.")

    def _claim(self, sale_id: int) -> tuple[str, SaleOrder]:
        """Claim the sale, then read it. Checks run on that read, never on one taken before the claim."""
        self._require_unclaimed(self.get_sale(sale_id))
        token = self.token_factory()
        if not self.repo.claim_sale(int(sale_id), token):
            raise ConcurrentModificationError(f"Sale {sale_id} was changed or removed by another operation.")
        try:
            snapshot = self.repo.get_sale(int(sale_id))
        except Exception:
            self.repo.release_sale(int(sale_id), token)
            raise
        if snapshot is None or snapshot.claim_token != token:
            raise ConcurrentModificationError(f"Sale {sale_id} claim was lost before it could be read.")
        return token, snapshot

    def _release(self, sale_id: int, token: str, updated: SaleOrder | None = None, tracker: StepTracker | None = None) -> None:
        try:
            released = self.repo.release_sale(sale_id, token, updated)
        except Exception as exc:
            if tracker is None or not tracker.applied:
                raise
            err = PartialApplicationError(tracker.operation, tracker.applied, {"step": "sale record update"}, exc)
            log.error("partial_application %s", err)
            raise err from exc
        if not released:
            raise ConcurrentModificationError(f"Sale {sale_id} claim was lost before completion.")
