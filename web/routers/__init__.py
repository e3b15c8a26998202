"""Router modules for FastAPI web API."""

from web.routers import artifacts, assets, config, health, runs

__all__ = ["artifacts", "assets", "config", "health", "runs"]
