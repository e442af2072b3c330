# app_web.py — JSON HTTP API on the standard library's threaded server

"""
HTTP surface for the store service.

Each request is served on its own thread (``ThreadingHTTPServer``) and
talks to a single shared :class:`~storefront.app.StoreApp`, which in turn
borrows a pooled connection per operation.  The handler holds no state
between requests.

Routes are served both at the root and under ``/api``:

    POST /register, POST /login, GET /profile
    GET|POST /products, GET|PUT|DELETE /products/<id>
    GET|POST /cart, POST /checkout, GET /orders
    GET /metrics (Prometheus text format)

Protected routes expect ``Authorization: Bearer <token>``: a missing
header yields 401, an invalid or expired token 403.  Errors are returned
as ``{"message": ...}``; unexpected exceptions are logged and reported as
a generic 500 without detail.

Run the server with:

    storefront serve

or ``python -m storefront.app_web``.  It listens on 0.0.0.0:8000 unless
``HOST``/``PORT`` say otherwise.
"""

from __future__ import annotations

import json
import logging
import re
import time
import urllib.parse
import uuid
from decimal import Decimal
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional, Tuple

from storefront import logging_config
from storefront.app import StoreApp
from storefront.config import Settings
from storefront.errors import StoreError, ValidationError
from storefront.metrics import HTTP_REQUEST_LATENCY_SECONDS, HTTP_REQUESTS_TOTAL, generate_metrics_text
from storefront.security import Identity

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
MAX_BODY_BYTES = 1024 * 1024
MAX_ROW_ID = 2**63 - 1


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return f"{obj:.2f}"
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps(payload: Any) -> bytes:
    return json.dumps(payload, default=_json_default).encode("utf-8")


# -----------------------------------------------------------------------------
# Routing table: (method, template, handler name, protected)
# -----------------------------------------------------------------------------

_ROUTES: List[Tuple[str, str, str, bool]] = [
    ("GET", "/", "_handle_root", False),
    ("POST", "/register", "_handle_register", False),
    ("POST", "/login", "_handle_login", False),
    ("GET", "/profile", "_handle_profile", True),
    ("GET", "/products", "_handle_products_list", False),
    ("POST", "/products", "_handle_product_create", True),
    ("GET", "/products/:id", "_handle_product_get", False),
    ("PUT", "/products/:id", "_handle_product_update", True),
    ("DELETE", "/products/:id", "_handle_product_delete", True),
    ("POST", "/cart", "_handle_cart_add", True),
    ("GET", "/cart", "_handle_cart_get", True),
    ("POST", "/checkout", "_handle_checkout", True),
    ("GET", "/orders", "_handle_orders_get", True),
]


def _compile(template: str) -> "re.Pattern[str]":
    pattern = re.sub(r":(\w+)", r"(?P<\1>[0-9]+)", template)
    return re.compile(f"^{pattern}$")


_COMPILED_ROUTES = [(m, t, _compile(t), h, p) for m, t, h, p in _ROUTES]


def resolve_route(method: str, path: str) -> Optional[Tuple[str, str, bool, Dict[str, int]]]:
    """Return (template, handler name, protected, path params) or None."""
    for route_method, template, regex, handler, protected in _COMPILED_ROUTES:
        if route_method != method:
            continue
        match = regex.match(path)
        if match:
            params = {k: int(v) for k, v in match.groupdict().items()}
            if any(v > MAX_ROW_ID for v in params.values()):
                # no SQLite row can carry this id
                return None
            return template, handler, protected, params
    return None


def _strip_prefix(path: str) -> str:
    if path == API_PREFIX or path.startswith(API_PREFIX + "/"):
        path = path[len(API_PREFIX):]
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path or "/"


class StoreHTTPServer(ThreadingHTTPServer):
    """Threaded server that carries the shared :class:`StoreApp`."""

    daemon_threads = True

    def __init__(self, server_address, store_app: StoreApp) -> None:
        super().__init__(server_address, StoreHTTPRequestHandler)
        self.store_app = store_app


class StoreHTTPRequestHandler(BaseHTTPRequestHandler):
    """Request handler implementing the store JSON API."""

    server: StoreHTTPServer
    server_version = "storefront/1.0"

    # -------------------
    # Response utilities
    # -------------------
    def _send_json(self, status: int, payload: Any) -> None:
        body = dumps(payload)
        self._send_bytes(status, body, "application/json; charset=utf-8")

    def _send_bytes(self, status: int, body: bytes, content_type: str) -> None:
        try:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.send_header("X-Request-ID", self._request_id)
            self.end_headers()
            self.wfile.write(body)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Client went away before the response was sent: {e}",
                           extra={"request_id": self._request_id})
        self._record_metrics(status)

    def log_message(self, format: str, *args: Any) -> None:
        # Access logging goes through _record_metrics instead of stderr
        logger.debug(format % args)

    # -------------------
    # Metrics helper
    # -------------------
    def _record_metrics(self, status: int) -> None:
        """Count the request, observe its latency and write the access log line."""
        if self._metrics_recorded:
            return
        self._metrics_recorded = True
        latency = time.perf_counter() - self._request_start_time
        HTTP_REQUESTS_TOTAL.inc(endpoint=self._endpoint, method=self.command, status=str(status))
        HTTP_REQUEST_LATENCY_SECONDS.observe(latency, endpoint=self._endpoint)
        extra: Dict[str, Any] = {"request_id": self._request_id,
                                 "extra": {"method": self.command, "path": self.path, "status": status,
                                           "latency_ms": round(latency * 1000, 2)}}
        if self._identity is not None:
            extra["user_id"] = self._identity.user_id
        logger.info("request completed", extra=extra)

    # --------------
    # Request entry
    # --------------
    def _begin_request(self) -> None:
        self._request_start_time = time.perf_counter()
        self._metrics_recorded = False
        self._request_id = self.headers.get("X-Request-ID") or uuid.uuid4().hex
        self._identity: Identity | None = None
        self._endpoint = "unmatched"

    def _read_json_body(self) -> Dict[str, Any]:
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            raise ValidationError("Invalid Content-Length header.")
        if length > MAX_BODY_BYTES:
            raise ValidationError("Request body is too large.")
        if length <= 0:
            return {}
        raw = self.rfile.read(length)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Request body must be valid JSON.")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        return data

    def _dispatch(self, method: str) -> None:
        self._begin_request()
        path = _strip_prefix(urllib.parse.urlparse(self.path).path)

        if method == "GET" and path == "/metrics":
            self._endpoint = "/metrics"
            self._send_bytes(200, generate_metrics_text(), "text/plain; version=0.0.4")
            return

        route = resolve_route(method, path)
        if route is None:
            self._send_json(404, {"message": "Not found."})
            return
        template, handler_name, protected, params = route
        self._endpoint = template
        app = self.server.store_app
        try:
            if protected:
                self._identity = app.authenticate(self.headers.get("Authorization"))
            handler: Callable[..., Tuple[int, Any]] = getattr(self, handler_name)
            status, payload = handler(app, **params)
        except StoreError as e:
            if e.status >= 500:
                logger.error(f"{method} {path} failed: {e.message}", extra={"request_id": self._request_id})
            self._send_json(e.status, e.to_dict())
            return
        except Exception:
            logger.exception(f"Unhandled error serving {method} {path}", extra={"request_id": self._request_id})
            self._send_json(500, {"message": "Internal server error."})
            return
        self._send_json(status, payload)

    def do_GET(self) -> None:
        self._dispatch("GET")

    def do_POST(self) -> None:
        self._dispatch("POST")

    def do_PUT(self) -> None:
        self._dispatch("PUT")

    def do_DELETE(self) -> None:
        self._dispatch("DELETE")

    # ----------------
    # Handlers
    # ----------------
    def _handle_root(self, app: StoreApp) -> Tuple[int, Any]:
        return 200, {"message": "Hello from the E-commerce API!"}

    def _handle_register(self, app: StoreApp) -> Tuple[int, Any]:
        body = self._read_json_body()
        user = app.register(body.get("email"), body.get("password"))
        return 201, {"message": "User registered successfully!", "user": {"id": user.id, "email": user.email}}

    def _handle_login(self, app: StoreApp) -> Tuple[int, Any]:
        body = self._read_json_body()
        token = app.login(body.get("email"), body.get("password"))
        return 200, {"message": "Login successful!", "token": token}

    def _handle_profile(self, app: StoreApp) -> Tuple[int, Any]:
        ident = self._identity
        return 200, {
            "message": "You have access to a protected route!",
            "user": {"userId": ident.user_id, "email": ident.email},
        }

    def _handle_products_list(self, app: StoreApp) -> Tuple[int, Any]:
        return 200, [p.to_dict() for p in app.list_products()]

    def _handle_product_get(self, app: StoreApp, id: int) -> Tuple[int, Any]:
        return 200, app.get_product(id).to_dict()

    def _handle_product_create(self, app: StoreApp) -> Tuple[int, Any]:
        product = app.create_product(self._read_json_body())
        return 201, {"message": "Product added successfully!", "product": product.to_dict()}

    def _handle_product_update(self, app: StoreApp, id: int) -> Tuple[int, Any]:
        product = app.update_product(id, self._read_json_body())
        return 200, {"message": "Product updated successfully!", "product": product.to_dict()}

    def _handle_product_delete(self, app: StoreApp, id: int) -> Tuple[int, Any]:
        deleted = app.delete_product(id)
        return 200, {"message": "Product deleted successfully!", "id": deleted}

    def _handle_cart_add(self, app: StoreApp) -> Tuple[int, Any]:
        line = app.add_to_cart(self._identity.user_id, self._read_json_body())
        return 201, {"message": "Item added to cart successfully!", "item": line.to_dict()}

    def _handle_cart_get(self, app: StoreApp) -> Tuple[int, Any]:
        return 200, [entry.to_dict() for entry in app.view_cart(self._identity.user_id)]

    def _handle_checkout(self, app: StoreApp) -> Tuple[int, Any]:
        result = app.checkout(self._identity.user_id)
        return 200, {
            "message": "Checkout successful!",
            "order_id": result.order_id,
            "total_amount": result.total_amount,
        }

    def _handle_orders_get(self, app: StoreApp) -> Tuple[int, Any]:
        return 200, [order.to_dict() for order in app.list_orders(self._identity.user_id)]


def build_server(store_app: StoreApp, host: str = "0.0.0.0", port: int = 8000) -> StoreHTTPServer:
    return StoreHTTPServer((host, port), store_app)


def run_server(store_app: StoreApp, host: str = "0.0.0.0", port: int = 8000) -> None:
    """Start the threaded HTTP server and serve requests until interrupted."""
    httpd = build_server(store_app, host, port)
    logger.info(f"Serving on http://{host}:{port}")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        httpd.server_close()
        store_app.close()


def main() -> None:
    settings = Settings.from_env()
    logging_config.configure_logging(settings.log_dir, settings.log_level)
    run_server(StoreApp(settings), settings.host, settings.port)


if __name__ == "__main__":
    main()
