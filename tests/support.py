# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.is_dir() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
# --- end path/bootstrap ---

import os
import shutil
import tempfile
import unittest
from decimal import Decimal
from typing import Any, List

from storefront.app import StoreApp
from storefront.config import Settings
from storefront.dao import Product

TEST_SECRET = "test-secret"


def fresh_settings(directory: str, **overrides: Any) -> Settings:
    """Settings pointing at a brand-new database file inside ``directory``."""
    values = dict(
        db_path=os.path.join(directory, "store.db"),
        token_secret=TEST_SECRET,
        log_dir=os.path.join(directory, "logs"),
        pool_size=4,
        busy_timeout_ms=10000,
    )
    values.update(overrides)
    return Settings(**values)


class StoreTestCase(unittest.TestCase):
    """Gives each test its own temporary database and a ``StoreApp`` on it."""

    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="storefront-test-")
        self.settings = fresh_settings(self.tmpdir)
        self.app = StoreApp(self.settings)

    def tearDown(self) -> None:
        self.app.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    # ---- seeding helpers ----

    def register(self, email: str = "alice@example.com", password: str = "secret") -> int:
        return self.app.register(email, password).id

    def add_product(self, name: str = "Widget", price: str = "9.99", stock: int = 5, **extra: Any) -> Product:
        return self.app.create_product({"name": name, "price": price, "stock": stock, **extra})

    def add_line(self, user_id: int, product_id: int, quantity: int):
        return self.app.add_to_cart(user_id, {"product_id": product_id, "quantity": quantity})

    # ---- raw reads ----

    def query(self, sql: str, params: tuple = ()) -> List[Any]:
        with self.app.pool.connection() as conn:
            return conn.execute(sql, params).fetchall()

    def scalar(self, sql: str, params: tuple = ()) -> Any:
        return self.query(sql, params)[0][0]

    def stock_of(self, product_id: int) -> int:
        return self.scalar("SELECT stock FROM products WHERE id = ?;", (product_id,))

    def order_count(self) -> int:
        return self.scalar("SELECT COUNT(*) FROM orders;")

    def cart_size(self, user_id: int) -> int:
        return len(self.app.view_cart(user_id))


def D(value: str) -> Decimal:
    return Decimal(value)
