"""Engine that reads a class model saved as JSON."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from ..core.engine_base import AnalysisEngine, EngineError
from ..core.models import ClassModel
from .registry import register_engine

logger = logging.getLogger(__name__)

DEFAULT_MODEL_FILENAME = "class_model.json"


class ModelFileEngine(AnalysisEngine):
    """Loads a `ClassModel` written by `ClassModel.as_dict`.

    `project_path` is the JSON file, or a directory holding `class_model.json`.
    """

    name = "model"

    def __init__(self, project_path: str, *, solc_version: Optional[str] = None) -> None:
        super().__init__(project_path, solc_version=solc_version)

    def _model_file(self) -> Path:
        path = Path(self.project_path)
        if path.is_dir():
            path = path / DEFAULT_MODEL_FILENAME
        return path

    def load(self) -> ClassModel:
        path = self._model_file()
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError as exc:
            raise EngineError(f"Class model file {path} does not exist") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise EngineError(f"Failed to read class model file {path}: {exc}") from exc

        try:
            model = ClassModel.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise EngineError(f"Invalid class model in {path}: {exc}") from exc

        model.engine_metadata.setdefault("engine", self.name)
        logger.debug("Loaded %d classes from %s", len(model.classes), path)
        return model


register_engine(
    ModelFileEngine.name,
    ModelFileEngine,
    description="Class model loaded from a JSON file.",
    override=True,
)
