from support import D, StoreTestCase, TEST_SECRET

import unittest

from storefront.errors import Conflict, Forbidden, ProductNotFound, Unauthorized, ValidationError
from storefront.security import issue_token


class TestAccounts(StoreTestCase):

    def test_register_then_login_issues_a_verifiable_token(self):
        uid = self.register("bob@example.com", "hunter2")
        token = self.app.login("bob@example.com", "hunter2")
        ident = self.app.authenticate(f"Bearer {token}")
        self.assertEqual(ident.user_id, uid)
        self.assertEqual(ident.email, "bob@example.com")

    def test_duplicate_email_is_a_conflict(self):
        self.register("bob@example.com")
        with self.assertRaises(Conflict):
            self.register("bob@example.com", "other")

    def test_register_requires_both_fields(self):
        for email, password in ((None, "pw"), ("a@example.com", ""), ("", "")):
            with self.subTest(email=email, password=password), self.assertRaises(ValidationError):
                self.app.register(email, password)

    def test_bad_credentials(self):
        self.register("bob@example.com", "right")
        with self.assertRaises(Unauthorized):
            self.app.login("bob@example.com", "wrong")
        with self.assertRaises(Unauthorized):
            self.app.login("nobody@example.com", "right")
        with self.assertRaises(ValidationError):
            self.app.login("bob@example.com", None)

    def test_lone_surrogates_are_rejected(self):
        with self.assertRaises(ValidationError):
            self.app.register("x@example.com", "\ud800")
        with self.assertRaises(ValidationError):
            self.app.login("\udfff@example.com", "pw")

    def test_failed_login_does_not_log_the_email(self):
        with self.assertLogs("storefront.app", level="INFO") as logs:
            with self.assertRaises(Unauthorized):
                self.app.login("ghost@example.com", "pw")
        self.assertNotIn("ghost", "\n".join(logs.output))
        self.assertTrue(all("email" not in vars(r).get("extra", {}) for r in logs.records))

    def test_authenticate_header_handling(self):
        with self.assertRaises(Unauthorized):
            self.app.authenticate(None)
        with self.assertRaises(Unauthorized):
            self.app.authenticate("Basic abc")
        with self.assertRaises(Forbidden):
            self.app.authenticate("Bearer not.a.token")
        expired = issue_token(1, "a@example.com", TEST_SECRET, ttl_seconds=60, now=0)
        with self.assertRaises(Forbidden):
            self.app.authenticate(f"Bearer {expired}")


class TestCatalog(StoreTestCase):

    def test_create_and_list(self):
        p = self.add_product("Wireless Mouse", "25.50", 100, description="Ergonomic", image_url="mouse.jpg")
        self.assertEqual(p.price, D("25.50"))
        self.assertEqual([x.id for x in self.app.list_products()], [p.id])
        self.assertEqual(self.app.get_product(p.id).description, "Ergonomic")

    def test_create_requires_name_price_stock(self):
        for body in ({"price": "1", "stock": 1}, {"name": "X", "stock": 1}, {"name": "X", "price": "1"}):
            with self.subTest(body=body), self.assertRaises(ValidationError):
                self.app.create_product(body)

    def test_zero_stock_counts_as_present(self):
        self.assertEqual(self.add_product(stock=0).stock, 0)

    def test_price_and_stock_validation(self):
        bad = [
            {"price": "-1"},
            {"price": "1.999"},
            {"price": "abc"},
            {"price": True},
            {"stock": -1},
            {"stock": 1.5},
            {"stock": "many"},
            {"name": "\ud800"},
            {"description": "bad \udc00"},
        ]
        for override in bad:
            body = {"name": "X", "price": "1.00", "stock": 1, **override}
            with self.subTest(body=body), self.assertRaises(ValidationError):
                self.app.create_product(body)

    def test_float_price_is_read_exactly(self):
        self.assertEqual(self.app.create_product({"name": "X", "price": 25.5, "stock": 1}).price, D("25.50"))

    def test_partial_update(self):
        p = self.add_product("Widget", "9.99", 5, description="old")
        updated = self.app.update_product(p.id, {"stock": 7, "description": None})
        self.assertEqual(updated.stock, 7)
        self.assertIsNone(updated.description)
        self.assertEqual(updated.name, "Widget")
        self.assertEqual(updated.price, D("9.99"))

    def test_update_and_delete_missing_product(self):
        with self.assertRaises(ProductNotFound):
            self.app.update_product(42, {"name": "Nope"})
        with self.assertRaises(ProductNotFound):
            self.app.update_product(42, {})
        with self.assertRaises(ProductNotFound):
            self.app.delete_product(42)
        with self.assertRaises(ProductNotFound):
            self.app.get_product(42)

    def test_update_rejects_invalid_fields(self):
        p = self.add_product()
        with self.assertRaises(ValidationError):
            self.app.update_product(p.id, {"name": ""})
        with self.assertRaises(ValidationError):
            self.app.update_product(p.id, {"price": None})

    def test_delete(self):
        p = self.add_product()
        self.assertEqual(self.app.delete_product(p.id), p.id)
        self.assertEqual(self.app.list_products(), [])

    def test_delete_referenced_product_is_a_conflict(self):
        uid = self.register()
        p = self.add_product()
        self.add_line(uid, p.id, 1)
        with self.assertRaises(Conflict):
            self.app.delete_product(p.id)
        self.assertEqual(len(self.app.list_products()), 1)


class TestCart(StoreTestCase):

    def setUp(self):
        super().setUp()
        self.alice = self.register("alice@example.com")
        self.bob = self.register("bob@example.com")
        self.product = self.add_product("Widget", "9.99", 5)

    def test_add_line_validation(self):
        with self.assertRaises(ProductNotFound):
            self.add_line(self.alice, 9999, 1)
        with self.assertRaises(ValidationError):
            self.add_line(self.alice, self.product.id, 0)
        with self.assertRaises(ValidationError):
            self.app.add_to_cart(self.alice, {"product_id": self.product.id})
        self.assertEqual(self.cart_size(self.alice), 0)

    def test_cart_is_scoped_per_user(self):
        self.add_line(self.alice, self.product.id, 2)
        self.assertEqual(self.cart_size(self.alice), 1)
        self.assertEqual(self.cart_size(self.bob), 0)

    def test_view_cart_is_a_pure_read(self):
        self.add_line(self.alice, self.product.id, 2)
        first = self.app.view_cart(self.alice)
        second = self.app.view_cart(self.alice)
        self.assertEqual(first, second)
        self.assertEqual(first[0].product_name, "Widget")
        self.assertEqual(first[0].quantity, 2)
        self.assertEqual(self.stock_of(self.product.id), 5)

    def test_adding_beyond_stock_is_allowed_until_checkout(self):
        line = self.add_line(self.alice, self.product.id, 50)
        self.assertEqual(line.quantity, 50)


if __name__ == "__main__":
    unittest.main(verbosity=2)
