from support import D, StoreTestCase

import sqlite3
import threading
import unittest
from unittest import mock

from storefront.checkout import CheckoutResult
from storefront.dao import ProductDAO
from storefront.errors import EmptyCart, InsufficientStock, InternalError
from storefront.metrics import CHECKOUT_OUTCOME_TOTAL, ORDERS_CREATED_TOTAL


class TestCheckout(StoreTestCase):

    def setUp(self):
        super().setUp()
        self.uid = self.register("alice@example.com")

    def test_end_to_end_scenario(self):
        mouse = self.add_product("Wireless Mouse", "25.50", 100)
        self.add_line(self.uid, mouse.id, 2)

        result = self.app.checkout(self.uid)

        self.assertEqual(result.total_amount, D("51.00"))
        self.assertEqual(str(result.total_amount), "51.00")
        self.assertEqual(self.stock_of(mouse.id), 98)
        self.assertEqual(self.cart_size(self.uid), 0)
        (order,) = self.app.list_orders(self.uid)
        self.assertEqual(order.id, result.order_id)
        self.assertEqual(order.status, "completed")
        self.assertEqual(order.total_amount, D("51.00"))
        self.assertEqual(len(order.items), 1)
        self.assertEqual(order.items[0].quantity, 2)
        self.assertEqual(order.items[0].name, "Wireless Mouse")
        self.assertEqual(order.items[0].price, D("25.50"))

    def test_empty_cart_creates_no_order(self):
        with self.assertRaises(EmptyCart):
            self.app.checkout(self.uid)
        self.assertEqual(self.order_count(), 0)

    def test_insufficient_stock_leaves_everything_unchanged(self):
        plenty = self.add_product("Plenty", "1.00", 10)
        scarce = self.add_product("Scarce", "2.00", 1)
        self.add_line(self.uid, plenty.id, 3)
        self.add_line(self.uid, scarce.id, 2)

        with self.assertRaises(InsufficientStock) as ctx:
            self.app.checkout(self.uid)

        self.assertEqual(ctx.exception.product_id, scarce.id)
        self.assertEqual(self.stock_of(plenty.id), 10)
        self.assertEqual(self.stock_of(scarce.id), 1)
        self.assertEqual(self.order_count(), 0)
        self.assertEqual(self.cart_size(self.uid), 2)

    def test_lowest_product_id_is_reported_first(self):
        first = self.add_product("First", "1.00", 0)
        second = self.add_product("Second", "1.00", 0)
        self.add_line(self.uid, second.id, 1)
        self.add_line(self.uid, first.id, 1)
        with self.assertRaises(InsufficientStock) as ctx:
            self.app.checkout(self.uid)
        self.assertEqual(ctx.exception.product_id, first.id)

    def test_lines_for_the_same_product_are_checked_together(self):
        p = self.add_product("Widget", "1.00", 3)
        self.add_line(self.uid, p.id, 2)
        self.add_line(self.uid, p.id, 2)
        with self.assertRaises(InsufficientStock):
            self.app.checkout(self.uid)
        self.assertEqual(self.stock_of(p.id), 3)

        other = self.register("bob@example.com")
        self.add_line(other, p.id, 1)
        self.add_line(other, p.id, 2)
        self.app.checkout(other)
        self.assertEqual(self.stock_of(p.id), 0)

    def test_total_uses_price_snapshot(self):
        p = self.add_product("Widget", "10.10", 10)
        self.add_line(self.uid, p.id, 3)
        self.app.update_product(p.id, {"price": "99.99"})
        self.add_line(self.uid, p.id, 1)

        result = self.app.checkout(self.uid)

        self.assertEqual(result.total_amount, D("30.30") + D("99.99"))

    def test_total_is_exact_decimal(self):
        a = self.add_product("A", "0.10", 100)
        b = self.add_product("B", "0.20", 100)
        self.add_line(self.uid, a.id, 3)
        self.add_line(self.uid, b.id, 1)
        self.assertEqual(self.app.checkout(self.uid).total_amount, D("0.50"))

    def test_failure_on_last_decrement_rolls_back_everything(self):
        a = self.add_product("A", "1.00", 5)
        b = self.add_product("B", "2.00", 5)
        self.add_line(self.uid, a.id, 1)
        self.add_line(self.uid, b.id, 2)

        original = ProductDAO.decrement_stock
        calls = []

        def flaky(dao, product_id, qty):
            calls.append(product_id)
            if product_id == b.id:
                raise sqlite3.OperationalError("disk I/O error")
            return original(dao, product_id, qty)

        with mock.patch.object(ProductDAO, "decrement_stock", new=flaky):
            with self.assertLogs("storefront.checkout", level="ERROR"):
                with self.assertRaises(InternalError) as ctx:
                    self.app.checkout(self.uid)

        self.assertEqual(calls, [a.id, b.id])
        self.assertNotIn("disk", ctx.exception.message)
        self.assertIsInstance(ctx.exception.__cause__, sqlite3.OperationalError)
        self.assertEqual(self.stock_of(a.id), 5)
        self.assertEqual(self.stock_of(b.id), 5)
        self.assertEqual(self.order_count(), 0)
        self.assertEqual(self.cart_size(self.uid), 2)

        # the cart is intact, so a retry goes through
        self.assertIsInstance(self.app.checkout(self.uid), CheckoutResult)
        self.assertEqual(self.stock_of(b.id), 3)

    def test_checkout_only_consumes_the_callers_cart(self):
        bob = self.register("bob@example.com")
        p = self.add_product("Widget", "5.00", 10)
        self.add_line(self.uid, p.id, 1)
        self.add_line(bob, p.id, 4)

        self.app.checkout(self.uid)

        self.assertEqual(self.stock_of(p.id), 9)
        self.assertEqual(self.cart_size(bob), 1)
        self.assertEqual(self.app.list_orders(bob), [])

    def test_orders_are_listed_newest_first(self):
        p = self.add_product("Widget", "1.00", 10)
        ids = []
        for qty in (1, 2, 3):
            self.add_line(self.uid, p.id, qty)
            ids.append(self.app.checkout(self.uid).order_id)
        orders = self.app.list_orders(self.uid)
        self.assertEqual([o.id for o in orders], list(reversed(ids)))
        self.assertEqual([o.items[0].quantity for o in orders], [3, 2, 1])
        self.assertEqual(self.app.list_orders(self.uid), orders)

    def test_outcomes_are_counted(self):
        success_before = CHECKOUT_OUTCOME_TOTAL.value(outcome="success")
        empty_before = CHECKOUT_OUTCOME_TOTAL.value(outcome="empty_cart")
        created_before = ORDERS_CREATED_TOTAL.value()
        with self.assertRaises(EmptyCart):
            self.app.checkout(self.uid)
        p = self.add_product()
        self.add_line(self.uid, p.id, 1)
        self.app.checkout(self.uid)
        self.assertEqual(CHECKOUT_OUTCOME_TOTAL.value(outcome="success"), success_before + 1)
        self.assertEqual(CHECKOUT_OUTCOME_TOTAL.value(outcome="empty_cart"), empty_before + 1)
        self.assertEqual(ORDERS_CREATED_TOTAL.value(), created_before + 1)


class TestConcurrentCheckout(StoreTestCase):

    def _race(self, user_ids):
        barrier = threading.Barrier(len(user_ids))
        results, errors = [], []
        lock = threading.Lock()

        def worker(uid):
            barrier.wait()
            try:
                res = self.app.checkout(uid)
                with lock:
                    results.append(res)
            except Exception as exc:
                with lock:
                    errors.append(exc)

        threads = [threading.Thread(target=worker, args=(uid,)) for uid in user_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        return results, errors

    def test_last_unit_goes_to_exactly_one_buyer(self):
        p = self.add_product("Last one", "10.00", 1)
        buyers = [self.register(f"user{i}@example.com") for i in range(2)]
        for uid in buyers:
            self.add_line(uid, p.id, 1)

        results, errors = self._race(buyers)

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], InsufficientStock)
        self.assertEqual(self.stock_of(p.id), 0)
        self.assertEqual(self.order_count(), 1)

    def test_many_buyers_never_oversell(self):
        p = self.add_product("Hot item", "1.00", 3)
        buyers = [self.register(f"buyer{i}@example.com") for i in range(8)]
        for uid in buyers:
            self.add_line(uid, p.id, 1)

        results, errors = self._race(buyers)

        self.assertEqual(len(results), 3)
        self.assertEqual(len(errors), 5)
        self.assertTrue(all(isinstance(e, InsufficientStock) for e in errors))
        self.assertEqual(self.stock_of(p.id), 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
