import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def seed(repo, locations=("Main", "North", "South"), products=(("P-1", "Widget", 10.0), ("P-2", "Gadget", 25.0))):
    """Locations and products with no stock. Returns (location_ids, product_ids)."""
    loc_ids = [repo.add_location(name) for name in locations]
    prod_ids = [repo.add_product(sku, name, price) for sku, name, price in products]
    return loc_ids, prod_ids


@pytest.fixture
def container(tmp_path: Path):
    from stockrecon.application.container import build_container

    return build_container(tmp_path / "stock.db")


def interleaving_repo(db_path):
    """SqliteRepository that runs `repo.interleave` (once) right before the next claim lands."""
    from stockrecon.repositories.sqlite_repo import SqliteRepository

    class InterleavingRepo(SqliteRepository):
        interleave = None

        def _run_interleaved(self):
            action, self.interleave = self.interleave, None
            if action is not None:
                action()

        def claim_sale(self, sale_id, token):
            self._run_interleaved()
            return super().claim_sale(sale_id, token)

        def claim_transfer(self, transfer_id, expected_status, token):
            self._run_interleaved()
            return super().claim_transfer(transfer_id, expected_status, token)

    return InterleavingRepo(db_path)
