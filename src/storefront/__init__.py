"""Top-level package for the online store backend.

The business logic lives in :mod:`storefront.app`, the data access layer
and connection pool in :mod:`storefront.dao`, the atomic checkout in
:mod:`storefront.checkout` and the HTTP API in :mod:`storefront.app_web`.
"""

__version__ = "1.0.0"
