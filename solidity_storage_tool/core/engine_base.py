"""Abstract engine definition for solidity_storage_tool."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .models import ClassEntry, ClassModel


class EngineError(RuntimeError):
    """Base error for analysis engine failures."""


class AnalysisEngine(ABC):
    """Supplies the class model of a Solidity project."""

    name: str = "abstract"

    def __init__(self, project_path: str, *, solc_version: Optional[str] = None) -> None:
        self.project_path = project_path
        self.solc_version = solc_version
        self._class_model: Optional[ClassModel] = None

    @abstractmethod
    def load(self) -> ClassModel:
        """Parse the project into classes with resolved nesting and imports."""

    def ensure_loaded(self) -> ClassModel:
        """Lazily load project information."""
        if self._class_model is None:
            self._class_model = self.load()
        return self._class_model

    def get_class(self, name: str, filename: Optional[str] = None) -> Optional[ClassEntry]:
        return self.ensure_loaded().find_class(name, filename)

    def iter_classes(self) -> Iterable[ClassEntry]:
        """Iterate through every class provided by the engine."""
        return self.ensure_loaded().iter_classes()
