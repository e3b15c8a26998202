"""FastAPI web application for the Kata static tarball builder.

This module provides the HTTP API that mirrors the core services:
the asset catalog, the run ledger and the artifact store.

All business logic is delegated to core modules in kata_static/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
