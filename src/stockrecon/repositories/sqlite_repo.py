from __future__ import annotations

import json
import logging
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

from stockrecon.domain.errors import AppError, NegativeStockResultError, PersistenceError
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

_TRANSFER_COLUMNS = (
    "id, origin_location_id, destination_location_id, status, items, "
    "created_at, updated_at, actor, notes, claim_token"
)
_SALE_COLUMNS = (
    "id, location_id, items, payment_status, gross, item_discounts, order_discount, net, "
    "amount_paid, remaining, created_at, updated_at, actor, notes, claim_token"
)


class SqliteRepository:
    def __init__(self, db_path: Path | str, timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = float(timeout)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def _session(self, immediate: bool = False) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._conn()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open stock database: {exc}") from exc
        try:
            cur = conn.cursor()
            if immediate:
                # takes the write lock up front so read-check-write on a key is serialized
                cur.execute("BEGIN IMMEDIATE")
            yield cur
            conn.commit()
        except AppError:
            conn.rollback()
            raise
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(f"Stock database error: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        self.run_migrations()

    def _schema_steps(self):
        return (
            (1, self._migration_v1_catalog_and_stock),
            (2, self._migration_v2_orders),
            (3, self._migration_v3_history),
        )

    def schema_version(self) -> int:
        with self._session() as cur:
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            return int(cur.fetchone()[0])

    def run_migrations(self) -> None:
        """Bring the stock schema up to date in one transaction.

        Before any pending step runs, the database file is copied aside as
        `<stem>.schema_v<N>.<timestamp>.bak`; a failed step restores that copy.
        """
        current = self.schema_version()
        pending = [(v, step) for v, step in self._schema_steps() if v > current]
        if not pending:
            return

        snapshot = self._snapshot_schema(current)
        conn = self._conn()
        version = current
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            for version, step in pending:
                step(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            conn.close()
            self._restore_schema_snapshot(snapshot)
            log.error("schema_migration_failed version=%s restored_to=%s snapshot=%s", version, current, snapshot)
            raise PersistenceError(
                f"Stock schema migration v{version} failed; database restored to schema v{current}."
            ) from exc
        conn.close()
        log.info("schema_migrated from=%s to=%s", current, pending[-1][0])

    def _snapshot_schema(self, version: int) -> Path | None:
        db_file = Path(self.db_path)
        if version == 0 or not db_file.exists():
            return None
        snapshot = db_file.with_name(f"{db_file.stem}.schema_v{version}.{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, snapshot)
        return snapshot

    def _restore_schema_snapshot(self, snapshot: Path | None) -> None:
        if snapshot is not None and snapshot.exists():
            shutil.copy2(snapshot, self.db_path)
    def _migration_v1_catalog_and_stock(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS locations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sku TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            unit_price REAL NOT NULL CHECK(unit_price >= 0),
            active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1))
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS stock_levels (
            product_id INTEGER NOT NULL,
            location_id INTEGER NOT NULL,
            quantity INTEGER NOT NULL CHECK(quantity >= 0),
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            PRIMARY KEY(product_id, location_id),
            FOREIGN KEY(product_id) REFERENCES products(id),
            FOREIGN KEY(location_id) REFERENCES locations(id)
        )
        """
        )

    def _migration_v2_orders(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transfers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                origin_location_id INTEGER NOT NULL,
                destination_location_id INTEGER NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('pending','concluded','cancelled')),
                items TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                actor TEXT,
                notes TEXT,
                claim_token TEXT,
                CHECK(origin_location_id <> destination_location_id),
                FOREIGN KEY(origin_location_id) REFERENCES locations(id),
                FOREIGN KEY(destination_location_id) REFERENCES locations(id)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sales (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                location_id INTEGER NOT NULL,
                items TEXT NOT NULL,
                payment_status TEXT NOT NULL,
                gross REAL NOT NULL CHECK(gross >= 0),
                item_discounts REAL NOT NULL DEFAULT 0 CHECK(item_discounts >= 0),
                order_discount REAL NOT NULL DEFAULT 0 CHECK(order_discount >= 0),
                net REAL NOT NULL CHECK(net >= 0),
                amount_paid REAL NOT NULL DEFAULT 0 CHECK(amount_paid >= 0),
                remaining REAL NOT NULL CHECK(remaining >= 0),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                actor TEXT,
                notes TEXT,
                claim_token TEXT,
                FOREIGN KEY(location_id) REFERENCES locations(id)
            )
            """
        )

    def _migration_v3_history(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stock_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                datetime TEXT NOT NULL,
                product_id INTEGER NOT NULL,
                location_id INTEGER NOT NULL,
                previous_qty INTEGER NOT NULL,
                new_qty INTEGER NOT NULL,
                delta INTEGER NOT NULL,
                operation_type TEXT NOT NULL,
                actor TEXT NOT NULL,
                note TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_stock_history_key ON stock_history (product_id, location_id, id)"
        )

    # ---------- Catalog ----------
    def add_location(self, name: str) -> int:
        with self._session() as cur:
            cur.execute("INSERT INTO locations (name) VALUES (?)", (name,))
            return int(cur.lastrowid)

    def get_location(self, location_id: int) -> Optional[Location]:
        with self._session() as cur:
            cur.execute("SELECT id, name FROM locations WHERE id=?", (int(location_id),))
            r = cur.fetchone()
        if not r:
            return None
        return Location(id=int(r[0]), name=str(r[1]))

    def list_locations(self) -> list[Location]:
        with self._session() as cur:
            cur.execute("SELECT id, name FROM locations ORDER BY name")
            rows = cur.fetchall()
        return [Location(id=int(r[0]), name=str(r[1])) for r in rows]

    def add_product(self, sku: str, name: str, unit_price: float) -> int:
        with self._session() as cur:
            cur.execute(
                """
                INSERT INTO products (sku, name, unit_price)
                VALUES (?, ?, ?)
            """,
                (sku, name, float(unit_price)),
            )
            return int(cur.lastrowid)

    def get_product_by_id(self, product_id: int) -> Optional[Product]:
        with self._session() as cur:
            cur.execute(
                """
                SELECT id, sku, name, unit_price, active
                FROM products
                WHERE active=1 AND id=?
            """,
                (int(product_id),),
            )
            r = cur.fetchone()
        if not r:
            return None
        return Product(id=int(r[0]), sku=str(r[1]), name=str(r[2]), unit_price=float(r[3]), active=int(r[4]))

    # ---------- Stock ----------
    def get_stock_level(self, product_id: int, location_id: int) -> int:
        with self._session() as cur:
            cur.execute(
                "SELECT quantity FROM stock_levels WHERE product_id=? AND location_id=?",
                (int(product_id), int(location_id)),
            )
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def _write_quantity(self, cur: sqlite3.Cursor, product_id: int, location_id: int, exists: bool, quantity: int) -> None:
        if exists:
            cur.execute(
                """
                UPDATE stock_levels
                SET quantity=?, updated_at=datetime('now')
                WHERE product_id=? AND location_id=?
                """,
                (int(quantity), int(product_id), int(location_id)),
            )
        elif quantity > 0:
            cur.execute(
                "INSERT INTO stock_levels (product_id, location_id, quantity) VALUES (?, ?, ?)",
                (int(product_id), int(location_id), int(quantity)),
            )

    def adjust_stock(self, product_id: int, location_id: int, delta: int) -> int:
        with self._session(immediate=True) as cur:
            cur.execute(
                "SELECT quantity FROM stock_levels WHERE product_id=? AND location_id=?",
                (int(product_id), int(location_id)),
            )
            row = cur.fetchone()
            current = int(row[0]) if row else 0
            new_qty = current + int(delta)
            if new_qty < 0:
                raise NegativeStockResultError(product_id, location_id, current, delta)
            if delta:
                self._write_quantity(cur, product_id, location_id, row is not None, new_qty)
            return new_qty

    def compare_and_set_stock(self, product_id: int, location_id: int, expected: int, new: int) -> bool:
        if int(new) < 0:
            raise NegativeStockResultError(product_id, location_id, expected, int(new) - int(expected))
        with self._session(immediate=True) as cur:
            cur.execute(
                "SELECT quantity FROM stock_levels WHERE product_id=? AND location_id=?",
                (int(product_id), int(location_id)),
            )
            row = cur.fetchone()
            current = int(row[0]) if row else 0
            if current != int(expected):
                return False
            if current != int(new):
                self._write_quantity(cur, product_id, location_id, row is not None, int(new))
            return True

    def list_stock_levels(self, product_id: int | None = None, location_id: int | None = None) -> list[StockLevel]:
        where = []
        params: list[int] = []
        if product_id is not None:
            where.append("product_id=?")
            params.append(int(product_id))
        if location_id is not None:
            where.append("location_id=?")
            params.append(int(location_id))
        sql = "SELECT product_id, location_id, quantity FROM stock_levels"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY location_id, product_id"
        with self._session() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [StockLevel(product_id=int(r[0]), location_id=int(r[1]), quantity=int(r[2])) for r in rows]

    def count_negative_stock_rows(self) -> int:
        with self._session() as cur:
            cur.execute("SELECT COUNT(*) FROM stock_levels WHERE quantity < 0")
            return int(cur.fetchone()[0])

    # ---------- Transfers ----------
    @staticmethod
    def _row_to_transfer(r) -> TransferOrder:
        return TransferOrder(
            id=int(r[0]),
            origin_location_id=int(r[1]),
            destination_location_id=int(r[2]),
            status=str(r[3]),
            items=transfer_items_from_payload(json.loads(r[4])),
            created_at=str(r[5]),
            updated_at=str(r[6]),
            actor=(r[7] if r[7] is not None else None),
            notes=(r[8] if r[8] is not None else None),
            claim_token=(r[9] if r[9] is not None else None),
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
        with self._session() as cur:
            cur.execute(
                """
                INSERT INTO transfers (
                    origin_location_id, destination_location_id, status, items,
                    created_at, updated_at, actor, notes
                ) VALUES (?, ?, 'pending', ?, ?, ?, ?, ?)
                """,
                (
                    int(origin_location_id),
                    int(destination_location_id),
                    json.dumps(transfer_items_payload(items)),
                    created_at,
                    created_at,
                    actor,
                    notes,
                ),
            )
            return int(cur.lastrowid)

    def get_transfer(self, transfer_id: int) -> Optional[TransferOrder]:
        with self._session() as cur:
            cur.execute(f"SELECT {_TRANSFER_COLUMNS} FROM transfers WHERE id=?", (int(transfer_id),))
            r = cur.fetchone()
        return self._row_to_transfer(r) if r else None

    def list_transfers(self, status: str | None = None) -> list[TransferOrder]:
        with self._session() as cur:
            if status is None:
                cur.execute(f"SELECT {_TRANSFER_COLUMNS} FROM transfers ORDER BY id DESC")
            else:
                cur.execute(f"SELECT {_TRANSFER_COLUMNS} FROM transfers WHERE status=? ORDER BY id DESC", (status,))
            rows = cur.fetchall()
        return [self._row_to_transfer(r) for r in rows]

    def claim_transfer(self, transfer_id: int, expected_status: str, token: str) -> bool:
        with self._session() as cur:
            cur.execute(
                """
                UPDATE transfers
                SET claim_token=?
                WHERE id=? AND status=? AND claim_token IS NULL
                """,
                (token, int(transfer_id), expected_status),
            )
            return cur.rowcount == 1

    def release_transfer(self, transfer_id: int, token: str, status: str, updated_at: str) -> bool:
        with self._session() as cur:
            cur.execute(
                """
                UPDATE transfers
                SET status=?, updated_at=?, claim_token=NULL
                WHERE id=? AND claim_token=?
                """,
                (status, updated_at, int(transfer_id), token),
            )
            return cur.rowcount == 1

    def force_release_transfer(self, transfer_id: int, status: str, updated_at: str) -> bool:
        with self._session() as cur:
            cur.execute(
                "UPDATE transfers SET status=?, updated_at=?, claim_token=NULL WHERE id=?",
                (status, updated_at, int(transfer_id)),
            )
            return cur.rowcount == 1

    def count_claimed_transfers(self) -> int:
        with self._session() as cur:
            cur.execute("SELECT COUNT(*) FROM transfers WHERE claim_token IS NOT NULL")
            return int(cur.fetchone()[0])

    # ---------- Sales ----------
    @staticmethod
    def _row_to_sale(r) -> SaleOrder:
        return SaleOrder(
            id=int(r[0]),
            location_id=int(r[1]),
            items=sale_items_from_payload(json.loads(r[2])),
            payment_status=str(r[3]),
            totals=SaleTotals(
                gross=float(r[4]),
                item_discounts=float(r[5]),
                order_discount=float(r[6]),
                net=float(r[7]),
                amount_paid=float(r[8]),
                remaining=float(r[9]),
            ),
            created_at=str(r[10]),
            updated_at=str(r[11]),
            actor=(r[12] if r[12] is not None else None),
            notes=(r[13] if r[13] is not None else None),
            claim_token=(r[14] if r[14] is not None else None),
        )

    def create_sale(self, sale: SaleOrder) -> int:
        t = sale.totals
        with self._session() as cur:
            cur.execute(
                """
                INSERT INTO sales (
                    location_id, items, payment_status, gross, item_discounts, order_discount, net,
                    amount_paid, remaining, created_at, updated_at, actor, notes, claim_token
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(sale.location_id),
                    json.dumps(sale_items_payload(sale.items)),
                    sale.payment_status,
                    t.gross,
                    t.item_discounts,
                    t.order_discount,
                    t.net,
                    t.amount_paid,
                    t.remaining,
                    sale.created_at,
                    sale.updated_at,
                    sale.actor,
                    sale.notes,
                    sale.claim_token,
                ),
            )
            return int(cur.lastrowid)

    def get_sale(self, sale_id: int) -> Optional[SaleOrder]:
        with self._session() as cur:
            cur.execute(f"SELECT {_SALE_COLUMNS} FROM sales WHERE id=?", (int(sale_id),))
            r = cur.fetchone()
        return self._row_to_sale(r) if r else None

    def list_sales(self, location_id: int | None = None) -> list[SaleOrder]:
        with self._session() as cur:
            if location_id is None:
                cur.execute(f"SELECT {_SALE_COLUMNS} FROM sales ORDER BY id DESC")
            else:
                cur.execute(f"SELECT {_SALE_COLUMNS} FROM sales WHERE location_id=? ORDER BY id DESC", (int(location_id),))
            rows = cur.fetchall()
        return [self._row_to_sale(r) for r in rows]

    def claim_sale(self, sale_id: int, token: str) -> bool:
        with self._session() as cur:
            cur.execute(
                "UPDATE sales SET claim_token=? WHERE id=? AND claim_token IS NULL",
                (token, int(sale_id)),
            )
            return cur.rowcount == 1

    def release_sale(self, sale_id: int, token: str, sale: SaleOrder | None = None) -> bool:
        with self._session() as cur:
            if sale is None:
                cur.execute(
                    "UPDATE sales SET claim_token=NULL WHERE id=? AND claim_token=?",
                    (int(sale_id), token),
                )
                return cur.rowcount == 1
            t = sale.totals
            cur.execute(
                """
                UPDATE sales
                SET location_id=?, items=?, payment_status=?, gross=?, item_discounts=?, order_discount=?,
                    net=?, amount_paid=?, remaining=?, updated_at=?, notes=?, claim_token=NULL
                WHERE id=? AND claim_token=?
                """,
                (
                    int(sale.location_id),
                    json.dumps(sale_items_payload(sale.items)),
                    sale.payment_status,
                    t.gross,
                    t.item_discounts,
                    t.order_discount,
                    t.net,
                    t.amount_paid,
                    t.remaining,
                    sale.updated_at,
                    sale.notes,
                    int(sale_id),
                    token,
                ),
            )
            return cur.rowcount == 1

    def force_release_sale(self, sale_id: int) -> bool:
        with self._session() as cur:
            cur.execute("UPDATE sales SET claim_token=NULL WHERE id=?", (int(sale_id),))
            return cur.rowcount == 1

    def delete_sale(self, sale_id: int, token: str) -> bool:
        with self._session() as cur:
            cur.execute("DELETE FROM sales WHERE id=? AND claim_token=?", (int(sale_id), token))
            return cur.rowcount == 1

    def count_claimed_sales(self) -> int:
        with self._session() as cur:
            cur.execute("SELECT COUNT(*) FROM sales WHERE claim_token IS NOT NULL")
            return int(cur.fetchone()[0])

    # ---------- History ----------
    def append_history(self, entry: HistoryEntry) -> int:
        with self._session() as cur:
            cur.execute(
                """
                INSERT INTO stock_history (
                    datetime, product_id, location_id, previous_qty, new_qty, delta,
                    operation_type, actor, note
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.datetime,
                    int(entry.product_id),
                    int(entry.location_id),
                    int(entry.previous_qty),
                    int(entry.new_qty),
                    int(entry.delta),
                    entry.operation_type,
                    entry.actor,
                    entry.note,
                ),
            )
            return int(cur.lastrowid)

    def list_history(
        self, product_id: int | None = None, location_id: int | None = None, limit: int = 100
    ) -> list[HistoryEntry]:
        where = []
        params: list[int] = []
        if product_id is not None:
            where.append("product_id=?")
            params.append(int(product_id))
        if location_id is not None:
            where.append("location_id=?")
            params.append(int(location_id))
        sql = (
            "SELECT id, datetime, product_id, location_id, previous_qty, new_qty, delta, "
            "operation_type, actor, note FROM stock_history"
        )
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))
        with self._session() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [
            HistoryEntry(
                id=int(r[0]),
                datetime=str(r[1]),
                product_id=int(r[2]),
                location_id=int(r[3]),
                previous_qty=int(r[4]),
                new_qty=int(r[5]),
                delta=int(r[6]),
                operation_type=str(r[7]),
                actor=str(r[8]),
                note=(r[9] if r[9] is not None else None),
            )
            for r in rows
        ]

    # ---------- Operations ----------
    def integrity_check(self) -> str:
        with self._session() as cur:
            cur.execute("PRAGMA integrity_check")
            row = cur.fetchone()
        return str(row[0]) if row else "unknown"
