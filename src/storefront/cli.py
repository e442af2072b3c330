"""
Command-line interface for the store service.

Subcommands:

    storefront serve [--host H] [--port P]   run the HTTP API
    storefront init-db                       create the schema
    storefront seed                          load the sample products
    storefront create-user EMAIL PASSWORD [--admin]

Settings come from the environment (see :mod:`storefront.config`);
``--host``/``--port`` override ``HOST``/``PORT`` for ``serve``.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from storefront import logging_config
from storefront.app import StoreApp
from storefront.app_web import run_server
from storefront.config import Settings
from storefront.errors import StoreError

SAMPLE_PRODUCTS = [
    {
        "name": "Wireless Mouse",
        "description": "A high-quality wireless mouse with ergonomic design.",
        "price": "25.50",
        "stock": 100,
        "image_url": "https://example.com/images/mouse.jpg",
    },
    {
        "name": "Mechanical Keyboard",
        "description": "A durable mechanical keyboard with RGB backlighting.",
        "price": "89.99",
        "stock": 50,
        "image_url": "https://example.com/images/keyboard.jpg",
    },
]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storefront", description="Online store backend service.")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API server.")
    serve.add_argument("--host", default=None, help="Bind address (default: $HOST or 0.0.0.0).")
    serve.add_argument("--port", type=int, default=None, help="Port (default: $PORT or 8000).")

    sub.add_parser("init-db", help="Create the database schema if missing.")
    sub.add_parser("seed", help="Insert the sample products.")

    user = sub.add_parser("create-user", help="Register a user.")
    user.add_argument("email")
    user.add_argument("password")
    user.add_argument("--admin", action="store_true", help="Grant the admin flag.")
    return parser


def seed_products(app: StoreApp) -> List[int]:
    return [app.create_product(p).id for p in SAMPLE_PRODUCTS]


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging_config.configure_logging(settings.log_dir, settings.log_level)
    app = StoreApp(settings)

    if args.command == "serve":
        run_server(app, args.host or settings.host, args.port or settings.port)
        return 0
    try:
        if args.command == "init-db":
            print(f"Database ready at {settings.db_path}")
        elif args.command == "seed":
            ids = seed_products(app)
            print(f"Added products {', '.join(map(str, ids))}.")
        elif args.command == "create-user":
            user = app.register(args.email, args.password, is_admin=args.admin)
            print(f"Created user {user.id} ({user.email}){' as admin' if user.is_admin else ''}.")
    except StoreError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        app.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
