from __future__ import annotations

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo


class ReportingService:
    def __init__(self, repo):
        self.repo = repo

    def export_stock_report(self, path: str, location_id: int | None = None, history_limit: int = 500) -> None:
        wb = Workbook()

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        def add_table(ws, name: str, start_row: int, start_col: int, end_row: int, end_col: int):
            ref = f"{get_column_letter(start_col)}{start_row}:{get_column_letter(end_col)}{end_row}"
            tab = Table(displayName=name, ref=ref)
            tab.tableStyleInfo = TableStyleInfo(
                name="TableStyleMedium9",
                showRowStripes=True,
                showColumnStripes=False,
            )
            ws.add_table(tab)

        locations = {loc.id: loc.name for loc in self.repo.list_locations()}
        product_names: dict[int, str] = {}

        def product_label(product_id: int) -> tuple[str, str]:
            if product_id not in product_names:
                p = self.repo.get_product_by_id(product_id)
                product_names[product_id] = (p.sku, p.name) if p else ("", "")
            return product_names[product_id]

        # -------- 1) Stock --------
        ws = wb.active
        ws.title = "Stock"
        ws.append(["Product ID", "SKU", "Product Name", "Location ID", "Location", "Quantity"])
        bold_row(ws, 1)
        for s in self.repo.list_stock_levels(location_id=location_id):
            sku, name = product_label(s.product_id)
            ws.append([int(s.product_id), sku, name, int(s.location_id), locations.get(s.location_id, ""), int(s.quantity)])
        ws.freeze_panes = "A2"
        set_widths(ws, {"A": 12, "B": 14, "C": 34, "D": 12, "E": 24, "F": 10})
        if ws.max_row >= 2:
            add_table(ws, "StockLevels", 1, 1, ws.max_row, 6)

        # -------- 2) History --------
        ws2 = wb.create_sheet("History")
        ws2.append(["Datetime", "Product ID", "Location ID", "Previous", "New", "Delta", "Operation", "Actor", "Note"])
        bold_row(ws2, 1)
        for h in self.repo.list_history(location_id=location_id, limit=history_limit):
            ws2.append([
                h.datetime, int(h.product_id), int(h.location_id),
                int(h.previous_qty), int(h.new_qty), int(h.delta),
                h.operation_type, h.actor, h.note or "",
            ])
        ws2.freeze_panes = "A2"
        set_widths(ws2, {
            "A": 22, "B": 12, "C": 12, "D": 10, "E": 10,
            "F": 8, "G": 20, "H": 16, "I": 40,
        })
        if ws2.max_row >= 2:
            add_table(ws2, "StockHistory", 1, 1, ws2.max_row, 9)

        # -------- 3) Transfers --------
        ws3 = wb.create_sheet("Transfers")
        ws3.append(["Transfer ID", "Status", "Origin", "Destination", "Product ID", "Qty", "Created", "Updated", "Actor"])
        bold_row(ws3, 1)
        for t in self.repo.list_transfers():
            if location_id is not None and location_id not in (t.origin_location_id, t.destination_location_id):
                continue
            for it in t.items:
                ws3.append([
                    int(t.id), t.status,
                    locations.get(t.origin_location_id, str(t.origin_location_id)),
                    locations.get(t.destination_location_id, str(t.destination_location_id)),
                    int(it.product_id), int(it.quantity),
                    t.created_at, t.updated_at, t.actor or "",
                ])
        ws3.freeze_panes = "A2"
        set_widths(ws3, {
            "A": 12, "B": 12, "C": 22, "D": 22,
            "E": 12, "F": 8, "G": 22, "H": 22, "I": 16,
        })
        if ws3.max_row >= 2:
            add_table(ws3, "TransferItems", 1, 1, ws3.max_row, 9)

        wb.save(path)
