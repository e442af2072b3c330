"""Checkout: turn a user's cart into an order in one transaction.

The whole check-then-write sequence runs inside a single ``BEGIN
IMMEDIATE`` transaction borrowed from the pool.  Taking the write lock at
the start means no other checkout can change a product's stock between
the stock check and the decrement, whether it runs on another thread or
in another process sharing the database file.  The decrement itself is
also conditional (``stock >= qty``), so stock cannot go negative even if
the lock discipline were bypassed.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List

from storefront.dao import CartDAO, CheckoutLine, ConnectionPool, OrderDAO, ProductDAO
from storefront.errors import BusinessRejection, EmptyCart, InsufficientStock, InternalError
from storefront.metrics import CHECKOUT_DURATION_SECONDS, CHECKOUT_OUTCOME_TOTAL, ORDERS_CREATED_TOTAL

logger = logging.getLogger(__name__)

ORDER_STATUS_COMPLETED = "completed"


@dataclass(frozen=True)
class CheckoutResult:
    order_id: int
    total_amount: Decimal


def required_quantities(lines: List[CheckoutLine]) -> "OrderedDict[int, int]":
    """Sum line quantities per product, ordered by ascending product id."""
    needed: Dict[int, int] = {}
    for line in lines:
        needed[line.product_id] = needed.get(line.product_id, 0) + line.quantity
    return OrderedDict(sorted(needed.items()))


def order_total(lines: List[CheckoutLine]) -> Decimal:
    return sum((line.price * line.quantity for line in lines), Decimal("0.00"))


class CheckoutEngine:
    """Consumes the cart and catalog under one transaction to create an order."""

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    def checkout(self, user_id: int) -> CheckoutResult:
        """Check out every unassigned cart line owned by ``user_id``.

        Returns:
            The new order's id and total.

        Raises:
            EmptyCart: The user has no unassigned cart lines.
            InsufficientStock: Some product has less stock than the cart
                asks for.  Reported for the lowest such product id.
            InternalError: Anything else went wrong.  The transaction was
                rolled back and the cart is unchanged.
        """
        start = time.perf_counter()
        outcome = "error"
        try:
            with self.pool.transaction("IMMEDIATE") as conn:
                result = self._run(conn, user_id)
            outcome = "success"
            ORDERS_CREATED_TOTAL.inc()
            logger.info(
                "Checkout committed",
                extra={"user_id": user_id, "extra": {"order_id": result.order_id, "total_amount": str(result.total_amount)}},
            )
            return result
        except EmptyCart:
            outcome = "empty_cart"
            logger.info("Checkout rejected: empty cart", extra={"user_id": user_id})
            raise
        except InsufficientStock as rej:
            outcome = "insufficient_stock"
            logger.info(
                "Checkout rejected: insufficient stock",
                extra={"user_id": user_id, "extra": {"product_id": rej.product_id}},
            )
            raise
        except BusinessRejection:
            outcome = "rejected"
            raise
        except Exception as exc:
            logger.exception("Checkout failed; transaction rolled back", extra={"user_id": user_id})
            raise InternalError() from exc
        finally:
            CHECKOUT_DURATION_SECONDS.observe(time.perf_counter() - start)
            CHECKOUT_OUTCOME_TOTAL.inc(outcome=outcome)

    def _run(self, conn, user_id: int) -> CheckoutResult:
        carts = CartDAO(conn)
        products = ProductDAO(conn)
        orders = OrderDAO(conn)

        lines = carts.lines_for_checkout(user_id)
        if not lines:
            raise EmptyCart()

        stock_by_product = {line.product_id: line.stock for line in lines}
        needed = required_quantities(lines)
        for product_id, qty in needed.items():
            if qty > stock_by_product[product_id]:
                raise InsufficientStock(product_id)

        total = order_total(lines)
        order_id = orders.create(user_id, total, ORDER_STATUS_COMPLETED)

        line_ids = [line.id for line in lines]
        bound = carts.bind_to_order(line_ids, order_id)
        if bound != len(line_ids):
            raise RuntimeError(f"Bound {bound} of {len(line_ids)} cart lines to order {order_id}")

        for product_id, qty in needed.items():
            if not products.decrement_stock(product_id, qty):
                raise InsufficientStock(product_id)

        return CheckoutResult(order_id=order_id, total_amount=total)
