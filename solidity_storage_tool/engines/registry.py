"""Named registry of class model engines."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable

from ..core.engine_base import AnalysisEngine

EngineFactory = Callable[..., AnalysisEngine]


@dataclass
class EngineRegistration:
    """Registered engine metadata."""

    name: str
    factory: EngineFactory
    description: str = ""


class EngineRegistry:
    """Holds named engine registrations."""

    def __init__(self) -> None:
        self._engines: Dict[str, EngineRegistration] = {}

    def register(self, registration: EngineRegistration, *, override: bool = False) -> None:
        if registration.name in self._engines and not override:
            raise ValueError(f"Engine {registration.name} already registered")
        self._engines[registration.name] = registration

    def get(self, name: str) -> EngineRegistration:
        try:
            return self._engines[name]
        except KeyError as exc:
            raise KeyError(f"Engine {name} is not registered") from exc

    def names(self) -> Iterable[str]:
        return sorted(self._engines)


ENGINE_REGISTRY = EngineRegistry()


def register_engine(
    name: str,
    factory: EngineFactory,
    *,
    description: str = "",
    override: bool = False,
) -> None:
    """Register a class model engine under `name`."""
    ENGINE_REGISTRY.register(
        EngineRegistration(name=name, factory=factory, description=description),
        override=override,
    )


def resolve_engine(name: str) -> EngineRegistration:
    return ENGINE_REGISTRY.get(name)
