# src/storefront/app.py
from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping

from storefront.checkout import CheckoutEngine, CheckoutResult
from storefront.config import Settings
from storefront.dao import (
    CartDAO,
    CartEntry,
    CartLine,
    ConnectionPool,
    Order,
    OrderDAO,
    Product,
    ProductDAO,
    User,
    UserDAO,
)
from storefront.errors import Conflict, ProductNotFound, Unauthorized, ValidationError
from storefront.security import Identity, hash_password, issue_token, verify_password, verify_token

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_MAX_PRICE = Decimal("100000000")  # NUMERIC(10, 2)
_MAX_INT = 2**31 - 1


# ---- Input validation helpers ----

def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _require(body: Mapping[str, Any], *names: str, message: str) -> None:
    if any(_is_missing(body.get(n)) for n in names):
        raise ValidationError(message)


def parse_price(value: Any) -> Decimal:
    """Parse a non-negative price with at most two decimal places."""
    if isinstance(value, bool):
        raise ValidationError("Price must be a number.")
    if isinstance(value, float):
        # shortest repr, so 25.5 parses as Decimal("25.5") not the binary value
        value = repr(value)
    try:
        price = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError("Price must be a number.")
    if not price.is_finite() or price < 0:
        raise ValidationError("Price must be a non-negative number.")
    if price >= _MAX_PRICE:
        raise ValidationError("Price is too large.")
    if price != price.quantize(_CENT):
        raise ValidationError("Price must have at most two decimal places.")
    return price.quantize(_CENT)


def parse_int(value: Any, name: str, minimum: int) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer.")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        try:
            result = int(value.strip())
        except ValueError:
            raise ValidationError(f"{name} must be an integer.")
    else:
        raise ValidationError(f"{name} must be an integer.")
    if result < minimum:
        raise ValidationError(f"{name} must be at least {minimum}.")
    if result > _MAX_INT:
        raise ValidationError(f"{name} is too large.")
    return result


def _check_text(value: str, name: str) -> str:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ValidationError(f"{name} must be valid UTF-8 text.")
    return value


def _optional_text(value: Any, name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string.")
    return _check_text(value, name)


class StoreApp:
    """
    Business logic for the store service: registration and login, catalog
    CRUD, cart, checkout and order history.  Every method borrows its own
    connection from the pool, so one instance can serve concurrent requests.
    """

    def __init__(self, settings: Settings, pool: ConnectionPool | None = None) -> None:
        self.settings = settings
        self.pool = pool or ConnectionPool(
            settings.db_path,
            size=settings.pool_size,
            busy_timeout_ms=settings.busy_timeout_ms,
        )
        self.pool.initialize()
        self.checkout_engine = CheckoutEngine(self.pool)

    def close(self) -> None:
        self.pool.close()

    # ---- Authentication ----

    def register(self, email: Any, password: Any, is_admin: bool = False) -> User:
        if _is_missing(email) or _is_missing(password):
            raise ValidationError("Email and password are required.")
        if not isinstance(email, str) or not isinstance(password, str):
            raise ValidationError("Email and password must be strings.")
        _check_text(email, "Email")
        _check_text(password, "Password")
        email = email.strip()
        password_hash = hash_password(password)
        try:
            with self.pool.transaction() as conn:
                user = UserDAO(conn).create(email, password_hash, is_admin=is_admin)
        except sqlite3.IntegrityError:
            raise Conflict("Email already in use.")
        logger.info("User registered", extra={"user_id": user.id})
        return user

    def login(self, email: Any, password: Any) -> str:
        """Return a bearer token for valid credentials."""
        if _is_missing(email) or _is_missing(password):
            raise ValidationError("Email and password are required.")
        if not isinstance(email, str) or not isinstance(password, str):
            raise ValidationError("Email and password must be strings.")
        _check_text(email, "Email")
        _check_text(password, "Password")
        with self.pool.connection() as conn:
            user = UserDAO(conn).get_by_email(email.strip())
        if user is None or not verify_password(password, user.password_hash):
            logger.info("Login failed")
            raise Unauthorized("Invalid credentials.")
        return issue_token(user.id, user.email, self.settings.token_secret, self.settings.token_ttl_seconds)

    def authenticate(self, authorization: str | None) -> Identity:
        """Resolve an ``Authorization`` header value to the caller's identity."""
        if not authorization:
            raise Unauthorized()
        scheme, _, token = authorization.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise Unauthorized()
        return verify_token(token, self.settings.token_secret)

    # ---- Product catalogue ----

    def list_products(self) -> List[Product]:
        with self.pool.connection() as conn:
            return ProductDAO(conn).list()

    def get_product(self, product_id: int) -> Product:
        with self.pool.connection() as conn:
            product = ProductDAO(conn).get(product_id)
        if product is None:
            raise ProductNotFound()
        return product

    def create_product(self, body: Mapping[str, Any]) -> Product:
        _require(body, "name", "price", "stock", message="Name, price, and stock are required.")
        name = body["name"]
        if not isinstance(name, str):
            raise ValidationError("Name must be a string.")
        _check_text(name, "Name")
        price = parse_price(body["price"])
        stock = parse_int(body["stock"], "Stock", minimum=0)
        description = _optional_text(body.get("description"), "Description")
        image_url = _optional_text(body.get("image_url"), "Image URL")
        with self.pool.transaction() as conn:
            product = ProductDAO(conn).create(name.strip(), price, stock, description, image_url)
        logger.info("Product created", extra={"extra": {"product_id": product.id}})
        return product

    def update_product(self, product_id: int, body: Mapping[str, Any]) -> Product:
        """Partial update: only fields present in ``body`` are changed."""
        fields: Dict[str, Any] = {}
        if "name" in body:
            if _is_missing(body["name"]) or not isinstance(body["name"], str):
                raise ValidationError("Name must be a non-empty string.")
            fields["name"] = _check_text(body["name"], "Name").strip()
        if "price" in body:
            fields["price"] = parse_price(body["price"])
        if "stock" in body:
            fields["stock"] = parse_int(body["stock"], "Stock", minimum=0)
        if "description" in body:
            fields["description"] = _optional_text(body["description"], "Description")
        if "image_url" in body:
            fields["image_url"] = _optional_text(body["image_url"], "Image URL")
        with self.pool.transaction() as conn:
            product = ProductDAO(conn).update(product_id, fields)
        if product is None:
            raise ProductNotFound()
        logger.info("Product updated", extra={"extra": {"product_id": product_id, "fields": sorted(fields)}})
        return product

    def delete_product(self, product_id: int) -> int:
        with self.pool.transaction() as conn:
            products = ProductDAO(conn)
            if products.get(product_id) is None:
                raise ProductNotFound()
            if products.is_referenced(product_id):
                raise Conflict("Product is referenced by cart lines or orders.")
            products.delete(product_id)
        logger.info("Product deleted", extra={"extra": {"product_id": product_id}})
        return product_id

    # ---- Cart operations ----

    def add_to_cart(self, user_id: int, body: Mapping[str, Any]) -> CartLine:
        _require(body, "product_id", "quantity", message="Product ID and quantity are required.")
        product_id = parse_int(body["product_id"], "Product ID", minimum=1)
        quantity = parse_int(body["quantity"], "Quantity", minimum=1)
        with self.pool.transaction() as conn:
            line = CartDAO(conn).add_line(user_id, product_id, quantity)
        logger.info(
            "Cart line added",
            extra={"user_id": user_id, "extra": {"product_id": product_id, "quantity": quantity}},
        )
        return line

    def view_cart(self, user_id: int) -> List[CartEntry]:
        with self.pool.connection() as conn:
            return CartDAO(conn).list_unassigned(user_id)

    # ---- Checkout and orders ----

    def checkout(self, user_id: int) -> CheckoutResult:
        return self.checkout_engine.checkout(user_id)

    def list_orders(self, user_id: int) -> List[Order]:
        with self.pool.transaction("DEFERRED") as conn:
            return OrderDAO(conn).list_for_user(user_id)
