"""Class model engines and their registry."""

from .registry import (
    ENGINE_REGISTRY,
    EngineFactory,
    EngineRegistration,
    register_engine,
    resolve_engine,
)

__all__ = [
    "ENGINE_REGISTRY",
    "EngineFactory",
    "EngineRegistration",
    "register_engine",
    "resolve_engine",
]

# Register the bundled engines on import.
from . import model_engine  # noqa: F401,E402
from . import slither_engine  # noqa: F401,E402
