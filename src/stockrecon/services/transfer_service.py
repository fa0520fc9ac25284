from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from stockrecon.domain.errors import (
    ConcurrentModificationError,
    InvalidTransferError,
    NotFoundError,
    PartialApplicationError,
    ValidationError,
)
from stockrecon.domain.models import (
    OP_TRANSFER,
    OP_TRANSFER_REVERSAL,
    TRANSFER_CANCELLED,
    TRANSFER_CONCLUDED,
    TRANSFER_PENDING,
    TRANSFER_STATUSES,
    TransferItem,
    TransferOrder,
)
from stockrecon.services.saga import StepTracker
from stockrecon.services.validation import ValidationGuard, aggregate_quantities

log = logging.getLogger("stockrecon.transfers")


@dataclass(frozen=True)
class CancelOutcome:
    transfer: TransferOrder
    reversed: bool
    already_cancelled: bool = False


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def normalize_transfer_items(items: Iterable) -> list[TransferItem]:
    out: list[TransferItem] = []
    for it in items:
        if isinstance(it, TransferItem):
            out.append(it)
            continue
        try:
            out.append(TransferItem(product_id=int(it["product_id"]), quantity=int(it["quantity"])))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid transfer item: {it!r}") from exc
    return out


class TransferService:
    """Drives pending -> concluded -> cancelled and moves stock through the ledger."""

    def __init__(
        self,
        repo,
        ledger,
        guard: ValidationGuard | None = None,
        token_factory: Callable[[], str] | None = None,
    ):
        self.repo = repo
        self.ledger = ledger
        self.guard = guard or ValidationGuard(ledger)
        self.token_factory = token_factory or (lambda: uuid.uuid4().hex)

    def get_transfer(self, transfer_id: int) -> TransferOrder:
        transfer = self.repo.get_transfer(int(transfer_id))
        if not transfer:
            raise NotFoundError(f"Transfer {transfer_id} not found.")
        return transfer

    def list_transfers(self, status: str | None = None) -> list[TransferOrder]:
        if status is not None and status not in TRANSFER_STATUSES:
            raise ValidationError(f"Unknown transfer status: {status}")
        return self.repo.list_transfers(status)

    def create_transfer(
        self,
        origin_location_id: int,
        destination_location_id: int,
        items: Iterable,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        """Persist a pending transfer. Nothing is reserved; stock is only checked."""
        items = normalize_transfer_items(items)
        self.guard.require_valid_transfer_shape(origin_location_id, destination_location_id, items)

        for loc in (origin_location_id, destination_location_id):
            if not self.repo.get_location(int(loc)):
                raise NotFoundError(f"Location {loc} not found.")
        for product_id in aggregate_quantities(items):
            if not self.repo.get_product_by_id(product_id):
                raise NotFoundError(f"Product {product_id} not found.")

        self.guard.require_sufficient_for_all(int(origin_location_id), aggregate_quantities(items))

        transfer_id = self.repo.create_transfer(
            int(origin_location_id),
            int(destination_location_id),
            items,
            created_at=_now_iso(),
            actor=actor,
            notes=notes,
        )
        log.info(
            "transfer_created transfer_id=%s origin=%s destination=%s items=%s actor=%s",
            transfer_id,
            origin_location_id,
            destination_location_id,
            len(items),
            actor,
        )
        return transfer_id

    def confirm_transfer(self, transfer_id: int, actor: Optional[str] = None) -> TransferOrder:
        transfer = self.get_transfer(transfer_id)
        self.guard.require_transition(transfer, "confirm")
        self._require_unclaimed(transfer)
        # conditions may have changed since creation
        self.guard.require_sufficient_for_all(transfer.origin_location_id, aggregate_quantities(transfer.items))

        token = self._claim(transfer, TRANSFER_PENDING)
        note = f"transfer {transfer.id}: {transfer.origin_location_id} -> {transfer.destination_location_id}"
        tracker = StepTracker(f"confirm_transfer {transfer.id}", log)
        self._apply(
            tracker,
            token,
            transfer,
            steps=(
                (it.product_id, loc, sign * it.quantity)
                for it in transfer.items
                for loc, sign in ((transfer.origin_location_id, -1), (transfer.destination_location_id, 1))
            ),
            operation_type=OP_TRANSFER,
            actor=actor,
            note=note,
            done_status=TRANSFER_CONCLUDED,
        )
        log.info("transfer_confirmed transfer_id=%s items=%s actor=%s", transfer.id, len(transfer.items), actor)
        return self.get_transfer(transfer.id)

    def cancel_transfer(self, transfer_id: int, actor: Optional[str] = None) -> CancelOutcome:
        transfer = self.get_transfer(transfer_id)
        if transfer.status == TRANSFER_CANCELLED:
            log.info("transfer_already_cancelled transfer_id=%s actor=%s", transfer.id, actor)
            return CancelOutcome(transfer=transfer, reversed=False, already_cancelled=True)
        self.guard.require_transition(transfer, "cancel")
        self._require_unclaimed(transfer)

        if transfer.status == TRANSFER_PENDING:
            token = self._claim(transfer, TRANSFER_PENDING)
            self._release(transfer.id, token, TRANSFER_CANCELLED)
            log.info("transfer_cancelled transfer_id=%s reversed=False actor=%s", transfer.id, actor)
            return CancelOutcome(transfer=self.get_transfer(transfer.id), reversed=False)

        # concluded: the destination must still hold what was moved; never clamp
        self.guard.require_sufficient_for_all(transfer.destination_location_id, aggregate_quantities(transfer.items))

        token = self._claim(transfer, TRANSFER_CONCLUDED)
        note = f"reversal of transfer {transfer.id}: {transfer.destination_location_id} -> {transfer.origin_location_id}"
        tracker = StepTracker(f"cancel_transfer {transfer.id}", log)
        self._apply(
            tracker,
            token,
            transfer,
            steps=(
                (it.product_id, loc, sign * it.quantity)
                for it in transfer.items
                for loc, sign in ((transfer.origin_location_id, 1), (transfer.destination_location_id, -1))
            ),
            operation_type=OP_TRANSFER_REVERSAL,
            actor=actor,
            note=note,
            done_status=TRANSFER_CANCELLED,
        )
        log.info("transfer_cancelled transfer_id=%s reversed=True actor=%s", transfer.id, actor)
        return CancelOutcome(transfer=self.get_transfer(transfer.id), reversed=True)

    def resolve_transfer(self, transfer_id: int, status: str, actor: Optional[str] = None) -> TransferOrder:
        """Manual correction after a partial application: set the final status and drop the claim."""
        if status not in TRANSFER_STATUSES:
            raise ValidationError(f"Unknown transfer status: {status}")
        transfer = self.get_transfer(transfer_id)
        if not transfer.claim_token:
            raise InvalidTransferError(f"Transfer {transfer.id} is not awaiting manual resolution.")
        self.repo.force_release_transfer(transfer.id, status, _now_iso())
        log.warning("transfer_resolved transfer_id=%s status=%s actor=%s", transfer.id, status, actor)
        return self.get_transfer(transfer.id)

    # ---------- internals ----------
    def _require_unclaimed(self, transfer: TransferOrder) -> None:
        if transfer.claim_token:
            raise ConcurrentModificationError(
                f"Transfer {transfer.id} is being processed or awaits manual resolution."
            )

    def _claim(self, transfer: TransferOrder, expected_status: str) -> str:
        token = self.token_factory()
        if not self.repo.claim_transfer(transfer.id, expected_status, token):
            raise ConcurrentModificationError(f"Transfer {transfer.id} was changed by another operation.")
        return token

    def _release(self, transfer_id: int, token: str, status: str) -> None:
        if not self.repo.release_transfer(transfer_id, token, status, _now_iso()):
            raise ConcurrentModificationError(f"Transfer {transfer_id} claim was lost before completion.")

    def _apply(self, tracker: StepTracker, token: str, transfer: TransferOrder, steps, done_status: str, **kwargs) -> None:
        try:
            for product_id, location_id, delta in steps:
                tracker.run(self.ledger, product_id, location_id, delta, **kwargs)
        except PartialApplicationError:
            # claim stays: the order is frozen until resolve_transfer
            raise
        except Exception:
            self._release(transfer.id, token, transfer.status)
            raise

        try:
            self._release(transfer.id, token, done_status)
        except Exception as exc:
            err = PartialApplicationError(tracker.operation, tracker.applied, {"step": f"status update to {done_status}"}, exc)
            log.error("partial_application %s", err)
            raise err from exc
