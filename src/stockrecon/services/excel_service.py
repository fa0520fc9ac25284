from __future__ import annotations

import logging
from typing import Optional

from openpyxl import load_workbook

from stockrecon.domain.errors import ValidationError
from stockrecon.domain.models import OP_STOCK_COUNT_IMPORT

log = logging.getLogger("stockrecon.excel")


class ExcelService:
    def __init__(self, repo, ledger):
        self.repo = repo
        self.ledger = ledger

    def import_stock_counts(
        self,
        path: str,
        location_id: int,
        increment: bool = False,
        actor: Optional[str] = None,
    ) -> tuple[int, int]:
        """
        Each row is a physical count for one product at the given location.
        Headers:
          product_id | quantity
        With increment=True the quantity is added to current stock instead of replacing it.
        """
        if not self.repo.get_location(int(location_id)):
            raise ValidationError(f"Location {location_id} not found.")

        wb = load_workbook(path)
        ws = wb.active

        headers = {}
        for col in range(1, ws.max_column + 1):
            v = ws.cell(row=1, column=col).value
            if isinstance(v, str):
                headers[v.strip().lower()] = col

        required = ["product_id", "quantity"]
        for r in required:
            if r not in headers:
                raise ValidationError(f"Missing column header: {r}")

        ok = 0
        skipped = 0
        note = f"excel import {path}"

        for row in range(2, ws.max_row + 1):
            try:
                product_id = ws.cell(row=row, column=headers["product_id"]).value
                qty = ws.cell(row=row, column=headers["quantity"]).value

                if product_id is None or qty is None:
                    skipped += 1
                    continue

                product_id = int(float(product_id))
                qty = int(float(qty))

                if qty < 0 or not self.repo.get_product_by_id(product_id):
                    skipped += 1
                    continue

                if increment:
                    if qty > 0:
                        self.ledger.adjust(product_id, location_id, qty, operation_type=OP_STOCK_COUNT_IMPORT, actor=actor, note=note)
                else:
                    self.ledger.set_quantity(product_id, location_id, qty, operation_type=OP_STOCK_COUNT_IMPORT, actor=actor, note=note)

                ok += 1
            except Exception as e:
                log.warning("Excel import skipped row %s: %s", row, e)
                skipped += 1

        log.info("stock_counts_imported location=%s ok=%s skipped=%s increment=%s", location_id, ok, skipped, increment)
        return ok, skipped
