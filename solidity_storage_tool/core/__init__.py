"""Core abstractions for solidity_storage_tool."""

from .engine_base import AnalysisEngine, EngineError
from .layout import (
    ContractNotFoundError,
    DimensionError,
    ResolutionError,
    StorageLayoutBuilder,
    StorageLayoutError,
    UnsupportedTypeError,
    build_layout,
)
from .models import (
    Association,
    Attribute,
    AttributeKind,
    ClassEntry,
    ClassModel,
    ClassStereotype,
    IdAllocator,
    Import,
    ImportedName,
    StorageSection,
    StorageSectionKind,
    Variable,
)

__all__ = [
    "AnalysisEngine",
    "EngineError",
    "ContractNotFoundError",
    "DimensionError",
    "ResolutionError",
    "StorageLayoutBuilder",
    "StorageLayoutError",
    "UnsupportedTypeError",
    "build_layout",
    "Association",
    "Attribute",
    "AttributeKind",
    "ClassEntry",
    "ClassModel",
    "ClassStereotype",
    "IdAllocator",
    "Import",
    "ImportedName",
    "StorageSection",
    "StorageSectionKind",
    "Variable",
]
