from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

import requests

from stockrecon.domain.errors import NegativeStockResultError, PersistenceError
from stockrecon.domain.models import (
    HistoryEntry,
    Location,
    Product,
    SaleOrder,
    SaleTotals,
    StockLevel,
    TransferItem,
    TransferOrder,
)
from stockrecon.repositories.contracts import (
    sale_items_from_payload,
    sale_items_payload,
    transfer_items_from_payload,
    transfer_items_payload,
)

log = logging.getLogger("stockrecon.store")

# check_violation and raise_exception, as emitted by the adjust_stock function
NEGATIVE_STOCK_CODES = {"23514", "P0001"}


def _eq(value: Any) -> str:
    return f"eq.{value}"


class RestRepository:
    """Remote store speaking the PostgREST dialect (tables + rpc/adjust_stock).

    Every call carries a bounded timeout. A mutating call that times out after the
    request was sent raises PersistenceError(outcome_unknown=True) and is not retried.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            self.headers["apikey"] = api_key
            self.headers["Authorization"] = f"Bearer {api_key}"

    def init_db(self) -> None:
        # schema is owned by the remote side
        return None

    # ---------- HTTP plumbing ----------
    def _send(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json_body: Any = None,
        mutating: bool = False,
        prefer: str | None = None,
    ) -> requests.Response:
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        url = f"{self.base_url}/{path}"
        try:
            return self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.ConnectTimeout as exc:
            raise PersistenceError(f"Store unreachable: {method} {path}: {exc}") from exc
        except requests.Timeout as exc:
            log.error("store_timeout method=%s path=%s mutating=%s", method, path, mutating)
            raise PersistenceError(
                f"Store call timed out after {self.timeout}s: {method} {path}",
                outcome_unknown=mutating,
            ) from exc
        except requests.RequestException as exc:
            raise PersistenceError(f"Store call failed: {method} {path}: {exc}") from exc

    @staticmethod
    def _payload(r: requests.Response) -> Any:
        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError as exc:
            raise PersistenceError(f"Store returned invalid JSON (HTTP {r.status_code}).") from exc

    def _json(self, r: requests.Response, path: str) -> Any:
        if r.status_code >= 400:
            detail = self._payload_or_text(r)
            raise PersistenceError(f"Store rejected {path} (HTTP {r.status_code}): {detail}")
        return self._payload(r)

    @staticmethod
    def _payload_or_text(r: requests.Response) -> Any:
        try:
            return r.json()
        except ValueError:
            return r.text

    def _select(self, table: str, params: dict) -> list[dict]:
        rows = self._json(self._send("GET", table, params=params), table)
        return list(rows or [])

    def _insert(self, table: str, row: dict) -> dict:
        r = self._send("POST", table, json_body=row, mutating=True, prefer="return=representation")
        rows = self._json(r, table) or []
        if not rows:
            raise PersistenceError(f"Store did not return the inserted {table} row.")
        return rows[0]

    def _patch(self, table: str, params: dict, changes: dict) -> int:
        r = self._send("PATCH", table, params=params, json_body=changes, mutating=True, prefer="return=representation")
        return len(self._json(r, table) or [])

    # ---------- Catalog ----------
    def add_location(self, name: str) -> int:
        return int(self._insert("locations", {"name": name})["id"])

    def get_location(self, location_id: int) -> Optional[Location]:
        rows = self._select("locations", {"id": _eq(int(location_id)), "select": "id,name"})
        if not rows:
            return None
        return Location(id=int(rows[0]["id"]), name=str(rows[0]["name"]))

    def list_locations(self) -> list[Location]:
        rows = self._select("locations", {"select": "id,name", "order": "name.asc"})
        return [Location(id=int(r["id"]), name=str(r["name"])) for r in rows]

    def add_product(self, sku: str, name: str, unit_price: float) -> int:
        return int(self._insert("products", {"sku": sku, "name": name, "unit_price": float(unit_price)})["id"])

    def get_product_by_id(self, product_id: int) -> Optional[Product]:
        rows = self._select(
            "products",
            {"id": _eq(int(product_id)), "active": _eq(1), "select": "id,sku,name,unit_price,active"},
        )
        if not rows:
            return None
        r = rows[0]
        return Product(
            id=int(r["id"]),
            sku=str(r["sku"]),
            name=str(r["name"]),
            unit_price=float(r["unit_price"]),
            active=int(r.get("active", 1)),
        )

    # ---------- Stock ----------
    def _stock_rows(self, product_id: int, location_id: int) -> list[dict]:
        return self._select(
            "stock_levels",
            {
                "product_id": _eq(int(product_id)),
                "location_id": _eq(int(location_id)),
                "select": "product_id,location_id,quantity",
            },
        )

    def get_stock_level(self, product_id: int, location_id: int) -> int:
        rows = self._stock_rows(product_id, location_id)
        return int(rows[0]["quantity"]) if rows else 0

    def adjust_stock(self, product_id: int, location_id: int, delta: int) -> int:
        body = {"p_product_id": int(product_id), "p_location_id": int(location_id), "p_delta": int(delta)}
        r = self._send("POST", "rpc/adjust_stock", json_body=body, mutating=True)
        if r.status_code >= 400:
            detail = self._payload_or_text(r)
            if isinstance(detail, dict) and str(detail.get("code")) in NEGATIVE_STOCK_CODES:
                try:
                    current: Optional[int] = self.get_stock_level(product_id, location_id)
                except PersistenceError:
                    current = None
                raise NegativeStockResultError(product_id, location_id, current, delta)
            raise PersistenceError(f"Store rejected rpc/adjust_stock (HTTP {r.status_code}): {detail}")
        result = self._payload(r)
        if isinstance(result, list):
            result = result[0] if result else None
        if isinstance(result, dict):
            result = result.get("adjust_stock", result.get("quantity"))
        if result is None:
            raise PersistenceError("Store did not return the adjusted quantity.", outcome_unknown=True)
        return int(result)

    def compare_and_set_stock(self, product_id: int, location_id: int, expected: int, new: int) -> bool:
        if int(new) < 0:
            raise NegativeStockResultError(product_id, location_id, expected, int(new) - int(expected))
        updated = self._patch(
            "stock_levels",
            {
                "product_id": _eq(int(product_id)),
                "location_id": _eq(int(location_id)),
                "quantity": _eq(int(expected)),
            },
            {"quantity": int(new)},
        )
        if updated:
            return True
        if int(expected) != 0 or self._stock_rows(product_id, location_id):
            return False
        if int(new) == 0:
            return True
        r = self._send(
            "POST",
            "stock_levels",
            json_body={"product_id": int(product_id), "location_id": int(location_id), "quantity": int(new)},
            mutating=True,
            prefer="return=minimal",
        )
        if r.status_code == 409:
            return False
        self._json(r, "stock_levels")
        return True

    def list_stock_levels(self, product_id: int | None = None, location_id: int | None = None) -> list[StockLevel]:
        params = {"select": "product_id,location_id,quantity", "order": "location_id.asc,product_id.asc"}
        if product_id is not None:
            params["product_id"] = _eq(int(product_id))
        if location_id is not None:
            params["location_id"] = _eq(int(location_id))
        return [
            StockLevel(product_id=int(r["product_id"]), location_id=int(r["location_id"]), quantity=int(r["quantity"]))
            for r in self._select("stock_levels", params)
        ]

    # ---------- Transfers ----------
    @staticmethod
    def _to_transfer(r: dict) -> TransferOrder:
        return TransferOrder(
            id=int(r["id"]),
            origin_location_id=int(r["origin_location_id"]),
            destination_location_id=int(r["destination_location_id"]),
            status=str(r["status"]),
            items=transfer_items_from_payload(r.get("items") or []),
            created_at=str(r["created_at"]),
            updated_at=str(r["updated_at"]),
            actor=r.get("actor"),
            notes=r.get("notes"),
            claim_token=r.get("claim_token"),
        )

    def create_transfer(
        self,
        origin_location_id: int,
        destination_location_id: int,
        items: Iterable[TransferItem],
        created_at: str,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        row = self._insert(
            "transfers",
            {
                "origin_location_id": int(origin_location_id),
                "destination_location_id": int(destination_location_id),
                "status": "pending",
                "items": transfer_items_payload(items),
                "created_at": created_at,
                "updated_at": created_at,
                "actor": actor,
                "notes": notes,
            },
        )
        return int(row["id"])

    def get_transfer(self, transfer_id: int) -> Optional[TransferOrder]:
        rows = self._select("transfers", {"id": _eq(int(transfer_id))})
        return self._to_transfer(rows[0]) if rows else None

    def list_transfers(self, status: str | None = None) -> list[TransferOrder]:
        params = {"order": "id.desc"}
        if status is not None:
            params["status"] = _eq(status)
        return [self._to_transfer(r) for r in self._select("transfers", params)]

    def claim_transfer(self, transfer_id: int, expected_status: str, token: str) -> bool:
        params = {"id": _eq(int(transfer_id)), "status": _eq(expected_status), "claim_token": "is.null"}
        return self._patch("transfers", params, {"claim_token": token}) == 1

    def release_transfer(self, transfer_id: int, token: str, status: str, updated_at: str) -> bool:
        params = {"id": _eq(int(transfer_id)), "claim_token": _eq(token)}
        changes = {"status": status, "updated_at": updated_at, "claim_token": None}
        return self._patch("transfers", params, changes) == 1

    def force_release_transfer(self, transfer_id: int, status: str, updated_at: str) -> bool:
        changes = {"status": status, "updated_at": updated_at, "claim_token": None}
        return self._patch("transfers", {"id": _eq(int(transfer_id))}, changes) == 1

    def count_claimed_transfers(self) -> int:
        return len(self._select("transfers", {"claim_token": "not.is.null", "select": "id"}))

    # ---------- Sales ----------
    @staticmethod
    def _to_sale(r: dict) -> SaleOrder:
        return SaleOrder(
            id=int(r["id"]),
            location_id=int(r["location_id"]),
            items=sale_items_from_payload(r.get("items") or []),
            payment_status=str(r["payment_status"]),
            totals=SaleTotals(
                gross=float(r["gross"]),
                item_discounts=float(r.get("item_discounts") or 0.0),
                order_discount=float(r.get("order_discount") or 0.0),
                net=float(r["net"]),
                amount_paid=float(r.get("amount_paid") or 0.0),
                remaining=float(r["remaining"]),
            ),
            created_at=str(r["created_at"]),
            updated_at=str(r["updated_at"]),
            actor=r.get("actor"),
            notes=r.get("notes"),
            claim_token=r.get("claim_token"),
        )

    @staticmethod
    def _sale_row(sale: SaleOrder) -> dict:
        t = sale.totals
        return {
            "location_id": int(sale.location_id),
            "items": sale_items_payload(sale.items),
            "payment_status": sale.payment_status,
            "gross": t.gross,
            "item_discounts": t.item_discounts,
            "order_discount": t.order_discount,
            "net": t.net,
            "amount_paid": t.amount_paid,
            "remaining": t.remaining,
            "updated_at": sale.updated_at,
            "notes": sale.notes,
        }

    def create_sale(self, sale: SaleOrder) -> int:
        row = self._sale_row(sale)
        row.update({"created_at": sale.created_at, "actor": sale.actor, "claim_token": sale.claim_token})
        return int(self._insert("sales", row)["id"])

    def get_sale(self, sale_id: int) -> Optional[SaleOrder]:
        rows = self._select("sales", {"id": _eq(int(sale_id))})
        return self._to_sale(rows[0]) if rows else None

    def list_sales(self, location_id: int | None = None) -> list[SaleOrder]:
        params = {"order": "id.desc"}
        if location_id is not None:
            params["location_id"] = _eq(int(location_id))
        return [self._to_sale(r) for r in self._select("sales", params)]

    def claim_sale(self, sale_id: int, token: str) -> bool:
        params = {"id": _eq(int(sale_id)), "claim_token": "is.null"}
        return self._patch("sales", params, {"claim_token": token}) == 1

    def release_sale(self, sale_id: int, token: str, sale: SaleOrder | None = None) -> bool:
        changes = self._sale_row(sale) if sale is not None else {}
        changes["claim_token"] = None
        return self._patch("sales", {"id": _eq(int(sale_id)), "claim_token": _eq(token)}, changes) == 1

    def force_release_sale(self, sale_id: int) -> bool:
        return self._patch("sales", {"id": _eq(int(sale_id))}, {"claim_token": None}) == 1

    def delete_sale(self, sale_id: int, token: str) -> bool:
        r = self._send(
            "DELETE",
            "sales",
            params={"id": _eq(int(sale_id)), "claim_token": _eq(token)},
            mutating=True,
            prefer="return=representation",
        )
        return len(self._json(r, "sales") or []) == 1

    def count_claimed_sales(self) -> int:
        return len(self._select("sales", {"claim_token": "not.is.null", "select": "id"}))

    # ---------- History ----------
    def append_history(self, entry: HistoryEntry) -> int:
        row = self._insert(
            "stock_history",
            {
                "datetime": entry.datetime,
                "product_id": int(entry.product_id),
                "location_id": int(entry.location_id),
                "previous_qty": int(entry.previous_qty),
                "new_qty": int(entry.new_qty),
                "delta": int(entry.delta),
                "operation_type": entry.operation_type,
                "actor": entry.actor,
                "note": entry.note,
            },
        )
        return int(row["id"])

    def list_history(
        self, product_id: int | None = None, location_id: int | None = None, limit: int = 100
    ) -> list[HistoryEntry]:
        params = {"order": "id.desc", "limit": str(int(limit))}
        if product_id is not None:
            params["product_id"] = _eq(int(product_id))
        if location_id is not None:
            params["location_id"] = _eq(int(location_id))
        return [
            HistoryEntry(
                id=int(r["id"]),
                datetime=str(r["datetime"]),
                product_id=int(r["product_id"]),
                location_id=int(r["location_id"]),
                previous_qty=int(r["previous_qty"]),
                new_qty=int(r["new_qty"]),
                delta=int(r["delta"]),
                operation_type=str(r["operation_type"]),
                actor=str(r["actor"]),
                note=r.get("note"),
            )
            for r in self._select("stock_history", params)
        ]

    # ---------- Operations ----------
    def integrity_check(self) -> str:
        self._select("locations", {"select": "id", "limit": "1"})
        return "ok"

    def count_negative_stock_rows(self) -> int:
        return len(self._select("stock_levels", {"quantity": "lt.0", "select": "product_id"}))
