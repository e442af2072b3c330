"""
Data access layer: connection pool, schema and DAOs.

Every logical operation borrows its own connection from
:class:`ConnectionPool` and gives it back on every exit path; no
connection is ever shared by two concurrent operations.  Transactions are
explicit (connections run with ``isolation_level=None``) so the caller
decides where a unit of work begins and ends:

    with pool.transaction() as conn:
        ProductDAO(conn).decrement_stock(product_id, 2)

Money is stored as integer cents and surfaced as ``Decimal`` with two
places.
"""

from __future__ import annotations
import logging, os, queue, sqlite3, threading, time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, UTC
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional

from storefront.errors import InternalError, ProductNotFound
from storefront.metrics import DB_POOL_IN_USE

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
_WAIT_SLICE_SECONDS = 0.05

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    is_admin INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    price_cents INTEGER NOT NULL CHECK (price_cents >= 0),
    stock INTEGER NOT NULL CHECK (stock >= 0),
    image_url TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    total_amount_cents INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    created_at TEXT NOT NULL
);

-- order_id IS NULL marks a line that is still in its owner's cart
CREATE TABLE IF NOT EXISTS order_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER REFERENCES orders(id),
    user_id INTEGER NOT NULL REFERENCES users(id),
    product_id INTEGER NOT NULL REFERENCES products(id) ON DELETE RESTRICT,
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    price_cents INTEGER NOT NULL CHECK (price_cents >= 0)
);

CREATE INDEX IF NOT EXISTS idx_order_items_cart ON order_items (user_id, order_id);
CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id);
CREATE INDEX IF NOT EXISTS idx_orders_user ON orders (user_id, created_at);
"""

# ------------------------------------------------------------------------------
# Utility helpers
# ------------------------------------------------------------------------------

def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return Decimal(int(cents)).scaleb(-2)


def apply_schema(conn: sqlite3.Connection) -> None:
    """Create the tables on a brand-new database; no-op once versioned."""
    (ver,) = conn.execute("PRAGMA user_version;").fetchone()
    if int(ver) >= SCHEMA_VERSION:
        return
    conn.executescript(SCHEMA_SQL)
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION};")
    logger.info(f"Applied schema version {SCHEMA_VERSION}")

# ------------------------------------------------------------------------------
# Connection management
# ------------------------------------------------------------------------------

def _new_connection(db_path: str, busy_timeout_ms: int) -> sqlite3.Connection:
    """Open a connection configured for concurrent use of one database file.

    The connection runs in autocommit mode so transactions are opened
    explicitly with ``BEGIN``.  WAL lets readers proceed while a writer
    holds the lock, and the busy timeout makes a second writer wait for
    the lock instead of failing with ``database is locked``.
    """
    _ensure_parent_dir(db_path)
    try:
        conn = sqlite3.connect(
            db_path,
            timeout=busy_timeout_ms / 1000.0,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.OperationalError:
            # Unsupported filesystem; rollback journal still works
            pass
        return conn
    except sqlite3.Error as e:
        logger.error(f"DB open failed ({db_path}): {e}")
        raise


class PoolTimeout(InternalError):
    """No connection became available within the acquire timeout."""


class ConnectionPool:
    """A bounded pool of SQLite connections to one database file.

    Connections are created lazily up to ``size``.  A borrower that finds
    the pool exhausted waits up to ``acquire_timeout`` seconds.  A
    connection handed back with a transaction still open is rolled back
    before it is reused, and one that fails that rollback is discarded.
    """

    def __init__(
        self,
        db_path: str,
        size: int = 5,
        busy_timeout_ms: int = 10000,
        acquire_timeout: float = 30.0,
    ) -> None:
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.db_path = db_path
        self.size = size
        self.busy_timeout_ms = busy_timeout_ms
        self.acquire_timeout = acquire_timeout
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._created = 0
        self._lock = threading.Lock()
        self._closed = False

    def initialize(self) -> None:
        with self.connection() as conn:
            apply_schema(conn)

    def acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise InternalError("Connection pool is closed.")
        try:
            conn = self._idle.get_nowait()
        except queue.Empty:
            conn = self._create_or_wait()
        DB_POOL_IN_USE.inc()
        return conn

    def _create_or_wait(self) -> sqlite3.Connection:
        # Wait in short slices so a slot freed by _discard is picked up
        deadline = time.monotonic() + self.acquire_timeout
        while True:
            with self._lock:
                can_create = self._created < self.size
                if can_create:
                    self._created += 1
            if can_create:
                try:
                    return _new_connection(self.db_path, self.busy_timeout_ms)
                except sqlite3.Error:
                    with self._lock:
                        self._created -= 1
                    raise
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PoolTimeout()
            try:
                return self._idle.get(timeout=min(_WAIT_SLICE_SECONDS, remaining))
            except queue.Empty:
                continue

    def release(self, conn: sqlite3.Connection) -> None:
        DB_POOL_IN_USE.dec()
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK;")
        except sqlite3.Error as e:
            logger.warning(f"Discarding pooled connection: {e}")
            self._discard(conn)
            return
        if self._closed:
            self._discard(conn)
            return
        self._idle.put(conn)

    def _discard(self, conn: sqlite3.Connection) -> None:
        try:
            conn.close()
        except sqlite3.Error:
            pass
        with self._lock:
            self._created -= 1

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection in autocommit mode for the ``with`` block."""
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    @contextmanager
    def transaction(self, mode: str = "IMMEDIATE") -> Iterator[sqlite3.Connection]:
        """Borrow a connection and run the ``with`` block as one transaction.

        ``IMMEDIATE`` takes the database write lock up front, so a
        read-check-write sequence inside the block cannot interleave with
        another writer.  ``DEFERRED`` gives read-only work a consistent
        snapshot.  Any exception rolls back and propagates unchanged.
        """
        if mode not in ("DEFERRED", "IMMEDIATE", "EXCLUSIVE"):
            raise ValueError(f"Unknown transaction mode: {mode}")
        conn = self.acquire()
        try:
            conn.execute(f"BEGIN {mode};")
            try:
                yield conn
            except BaseException:
                try:
                    conn.execute("ROLLBACK;")
                except sqlite3.Error:
                    logger.exception("Rollback failed")
                raise
            conn.execute("COMMIT;")
        finally:
            self.release(conn)

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            self._discard(conn)

# ------------------------------------------------------------------------------
# Domain models
# ------------------------------------------------------------------------------

@dataclass
class User:
    id: int
    email: str
    password_hash: str
    is_admin: bool
    created_at: str


@dataclass
class Product:
    id: int
    name: str
    description: str | None
    price: Decimal
    stock: int
    image_url: str | None
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "stock": self.stock,
            "image_url": self.image_url,
            "created_at": self.created_at,
        }


@dataclass
class CartLine:
    """A cart line; ``order_id`` is None until checkout binds it."""

    id: int
    user_id: int
    product_id: int
    quantity: int
    price: Decimal
    order_id: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price": self.price,
        }


@dataclass
class CartEntry:
    """A cart line joined with the product's display fields."""

    id: int
    product_id: int
    quantity: int
    price: Decimal
    product_name: str
    image_url: str | None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price": self.price,
            "product_name": self.product_name,
            "image_url": self.image_url,
        }


@dataclass
class CheckoutLine:
    """A cart line joined with the referenced product's current stock."""

    id: int
    product_id: int
    quantity: int
    price: Decimal
    stock: int


@dataclass
class OrderItem:
    product_id: int
    name: str
    quantity: int
    price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": self.price,
        }


@dataclass
class Order:
    id: int
    user_id: int
    total_amount: Decimal
    status: str
    created_at: str
    items: List[OrderItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.id,
            "total_amount": self.total_amount,
            "status": self.status,
            "created_at": self.created_at,
            "items": [it.to_dict() for it in self.items],
        }

# ------------------------------------------------------------------------------
# Base DAO
# ------------------------------------------------------------------------------

class BaseDAO:
    """Base class for all DAOs.  Each instance works on one borrowed connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

# ------------------------------------------------------------------------------
# User DAO
# ------------------------------------------------------------------------------

_USER_COLUMNS = "id, email, password_hash, is_admin, created_at"


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        password_hash=row["password_hash"],
        is_admin=bool(row["is_admin"]),
        created_at=row["created_at"],
    )


class UserDAO(BaseDAO):
    """Data Access Object for the users table."""

    def create(self, email: str, password_hash: str, is_admin: bool = False) -> User:
        """Insert a user.  Raises ``sqlite3.IntegrityError`` if the email is taken."""
        ts = utcnow_iso()
        cur = self.conn.execute(
            "INSERT INTO users (email, password_hash, is_admin, created_at) VALUES (?, ?, ?, ?);",
            (email, password_hash, 1 if is_admin else 0, ts),
        )
        return User(cur.lastrowid, email, password_hash, is_admin, ts)

    def get_by_email(self, email: str) -> Optional[User]:
        row = self.conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?;", (email,)).fetchone()
        return _user_from_row(row) if row else None

# ------------------------------------------------------------------------------
# Product DAO
# ------------------------------------------------------------------------------

_PRODUCT_COLUMNS = "id, name, description, price_cents, stock, image_url, created_at"

# API field -> column; price is converted to cents on the way in
_UPDATABLE_PRODUCT_FIELDS = {
    "name": "name",
    "description": "description",
    "price": "price_cents",
    "stock": "stock",
    "image_url": "image_url",
}


def _product_from_row(row: sqlite3.Row) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        price=from_cents(row["price_cents"]),
        stock=row["stock"],
        image_url=row["image_url"],
        created_at=row["created_at"],
    )


class ProductDAO(BaseDAO):
    """DAO for product records."""

    def get(self, product_id: int) -> Optional[Product]:
        row = self.conn.execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM products WHERE id = ?;", (product_id,)
        ).fetchone()
        return _product_from_row(row) if row else None

    def list(self) -> List[Product]:
        rows = self.conn.execute(f"SELECT {_PRODUCT_COLUMNS} FROM products ORDER BY id;").fetchall()
        return [_product_from_row(r) for r in rows]

    def create(
        self,
        name: str,
        price: Decimal,
        stock: int,
        description: str | None = None,
        image_url: str | None = None,
    ) -> Product:
        ts = utcnow_iso()
        cur = self.conn.execute(
            """
            INSERT INTO products (name, description, price_cents, stock, image_url, created_at)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (name, description, to_cents(price), stock, image_url, ts),
        )
        return Product(cur.lastrowid, name, description, from_cents(to_cents(price)), stock, image_url, ts)

    def update(self, product_id: int, fields: Dict[str, Any]) -> Optional[Product]:
        """Apply a partial update; only the keys present in ``fields`` change.

        Returns the updated product, or None if no product has that id.
        """
        assignments: List[str] = []
        params: List[Any] = []
        for key, value in fields.items():
            column = _UPDATABLE_PRODUCT_FIELDS.get(key)
            if column is None:
                raise ValueError(f"Unknown product field: {key}")
            if column == "price_cents":
                value = to_cents(value)
            assignments.append(f"{column} = ?")
            params.append(value)
        if assignments:
            cur = self.conn.execute(
                f"UPDATE products SET {', '.join(assignments)} WHERE id = ?;",
                (*params, product_id),
            )
            if cur.rowcount == 0:
                return None
        return self.get(product_id)

    def delete(self, product_id: int) -> bool:
        """Delete a product.  Raises ``sqlite3.IntegrityError`` if it is referenced."""
        cur = self.conn.execute("DELETE FROM products WHERE id = ?;", (product_id,))
        return cur.rowcount > 0

    def decrement_stock(self, product_id: int, qty: int) -> bool:
        """Decrease stock by ``qty`` only if enough is on hand.

        A single conditional UPDATE, so stock can never be driven below
        zero.  Returns False when the guard refused the update.  Meant to
        run inside a write transaction.
        """
        if qty < 0:
            raise ValueError("Quantity to decrease must be non-negative")
        cur = self.conn.execute(
            "UPDATE products SET stock = stock - ? WHERE id = ? AND stock >= ?;",
            (qty, product_id, qty),
        )
        return cur.rowcount > 0

    def is_referenced(self, product_id: int) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM order_items WHERE product_id = ? LIMIT 1;", (product_id,)
        ).fetchone()
        return row is not None

# ------------------------------------------------------------------------------
# Cart DAO
# ------------------------------------------------------------------------------

class CartDAO(BaseDAO):
    """DAO for cart lines: ``order_items`` rows whose ``order_id`` is NULL."""

    def add_line(self, user_id: int, product_id: int, quantity: int) -> CartLine:
        """Add a line priced at the product's current price.

        Raises:
            ProductNotFound: No product has ``product_id``.
        """
        row = self.conn.execute("SELECT price_cents FROM products WHERE id = ?;", (product_id,)).fetchone()
        if row is None:
            raise ProductNotFound()
        price_cents = row["price_cents"]
        cur = self.conn.execute(
            """
            INSERT INTO order_items (order_id, user_id, product_id, quantity, price_cents)
            VALUES (NULL, ?, ?, ?, ?);
            """,
            (user_id, product_id, quantity, price_cents),
        )
        return CartLine(cur.lastrowid, user_id, product_id, quantity, from_cents(price_cents))

    def list_unassigned(self, user_id: int) -> List[CartEntry]:
        rows = self.conn.execute(
            """
            SELECT oi.id, oi.product_id, oi.quantity, oi.price_cents,
                   p.name AS product_name, p.image_url
            FROM order_items oi
            JOIN products p ON oi.product_id = p.id
            WHERE oi.user_id = ? AND oi.order_id IS NULL
            ORDER BY oi.id;
            """,
            (user_id,),
        ).fetchall()
        return [
            CartEntry(
                id=r["id"],
                product_id=r["product_id"],
                quantity=r["quantity"],
                price=from_cents(r["price_cents"]),
                product_name=r["product_name"],
                image_url=r["image_url"],
            )
            for r in rows
        ]

    def lines_for_checkout(self, user_id: int) -> List[CheckoutLine]:
        rows = self.conn.execute(
            """
            SELECT oi.id, oi.product_id, oi.quantity, oi.price_cents, p.stock
            FROM order_items oi
            JOIN products p ON oi.product_id = p.id
            WHERE oi.user_id = ? AND oi.order_id IS NULL
            ORDER BY oi.id;
            """,
            (user_id,),
        ).fetchall()
        return [
            CheckoutLine(
                id=r["id"],
                product_id=r["product_id"],
                quantity=r["quantity"],
                price=from_cents(r["price_cents"]),
                stock=r["stock"],
            )
            for r in rows
        ]

    def bind_to_order(self, line_ids: Iterable[int], order_id: int) -> int:
        """Attach unassigned lines to an order.  Returns the number bound."""
        bound = 0
        for line_id in line_ids:
            cur = self.conn.execute(
                "UPDATE order_items SET order_id = ? WHERE id = ? AND order_id IS NULL;",
                (order_id, line_id),
            )
            bound += cur.rowcount
        return bound

# ------------------------------------------------------------------------------
# Order DAO
# ------------------------------------------------------------------------------

class OrderDAO(BaseDAO):
    """DAO for orders and the cart lines bound to them."""

    def create(self, user_id: int, total_amount: Decimal, status: str = "completed") -> int:
        cur = self.conn.execute(
            "INSERT INTO orders (user_id, total_amount_cents, status, created_at) VALUES (?, ?, ?, ?);",
            (user_id, to_cents(total_amount), status, utcnow_iso()),
        )
        return cur.lastrowid

    def list_for_user(self, user_id: int) -> List[Order]:
        """Return the user's orders with their items, newest first."""
        rows = self.conn.execute(
            """
            SELECT o.id AS order_id, o.user_id, o.total_amount_cents, o.status, o.created_at,
                   oi.product_id, p.name, oi.quantity, oi.price_cents
            FROM orders o
            LEFT JOIN order_items oi ON oi.order_id = o.id
            LEFT JOIN products p ON p.id = oi.product_id
            WHERE o.user_id = ?
            ORDER BY o.created_at DESC, o.id DESC, oi.id;
            """,
            (user_id,),
        ).fetchall()
        orders: List[Order] = []
        by_id: Dict[int, Order] = {}
        for r in rows:
            order = by_id.get(r["order_id"])
            if order is None:
                order = Order(
                    id=r["order_id"],
                    user_id=r["user_id"],
                    total_amount=from_cents(r["total_amount_cents"]),
                    status=r["status"],
                    created_at=r["created_at"],
                )
                by_id[order.id] = order
                orders.append(order)
            if r["product_id"] is not None:
                order.items.append(
                    OrderItem(
                        product_id=r["product_id"],
                        name=r["name"],
                        quantity=r["quantity"],
                        price=from_cents(r["price_cents"]),
                    )
                )
        return orders
