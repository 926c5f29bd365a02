"""Services module."""

from .runner_service import SessionRegistry, get_registry, runner_lifespan

__all__ = ["SessionRegistry", "get_registry", "runner_lifespan"]
