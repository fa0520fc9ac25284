import sqlite3
from pathlib import Path

import pytest

from conftest import seed
from stockrecon.domain.errors import NegativeStockResultError, PersistenceError
from stockrecon.repositories.sqlite_repo import SqliteRepository


def test_init_db_is_idempotent(tmp_path: Path):
    db = tmp_path / "stock.db"
    repo = SqliteRepository(db)
    repo.init_db()
    repo.init_db()

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("SELECT version FROM schema_migrations ORDER BY version")
    versions = [int(r[0]) for r in cur.fetchall()]
    conn.close()

    assert versions == [1, 2, 3]


def test_quantity_cannot_be_stored_negative(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "check.db")
    repo.init_db()
    (loc, _n, _s), (pid, _o) = seed(repo)
    repo.adjust_stock(pid, loc, 2)

    conn = repo._conn()
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("UPDATE stock_levels SET quantity=-1 WHERE product_id=? AND location_id=?", (pid, loc))
    conn.close()

    with pytest.raises(NegativeStockResultError):
        repo.compare_and_set_stock(pid, loc, 2, -1)
    assert repo.get_stock_level(pid, loc) == 2
    assert repo.count_negative_stock_rows() == 0


def test_zero_quantity_debit_on_missing_row_does_not_create_it(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "lazy.db")
    repo.init_db()
    (loc, _n, _s), (pid, _o) = seed(repo)

    assert repo.adjust_stock(pid, loc, 0) == 0
    assert repo.list_stock_levels() == []


def test_migration_failure_restores_db(tmp_path: Path):
    class BrokenMigrationRepo(SqliteRepository):
        def _migration_v3_history(self, cur):
            raise RuntimeError("forced migration failure")

    db = tmp_path / "broken.db"
    repo = SqliteRepository(db)
    repo.init_db()
    seed(repo)

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("DELETE FROM schema_migrations WHERE version = 3")
    conn.commit()
    conn.close()

    broken = BrokenMigrationRepo(db)

    with pytest.raises(PersistenceError, match="migration v3 failed; database restored to schema v2"):
        broken.run_migrations()

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
    after = int(cur.fetchone()[0])
    conn.close()

    assert after == 2
    assert len(repo.list_locations()) == 3
    assert [p.name.split(".")[1] for p in tmp_path.glob("broken.schema_v*.bak")] == ["schema_v2"]


def test_current_schema_runs_no_steps_and_leaves_no_snapshot(tmp_path: Path):
    db = tmp_path / "fresh.db"
    repo = SqliteRepository(db)
    repo.init_db()
    assert repo.schema_version() == 3

    repo.run_migrations()

    assert repo.schema_version() == 3
    assert list(tmp_path.glob("*.bak")) == []


def test_sqlite_errors_surface_as_persistence_errors(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "missing-tables.db")

    with pytest.raises(PersistenceError, match="Stock database error"):
        repo.get_stock_level(1, 1)
