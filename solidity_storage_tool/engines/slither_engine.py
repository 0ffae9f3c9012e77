"""Slither-based engine implementation."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.engine_base import AnalysisEngine, EngineError
from ..core.models import (
    Association,
    Attribute,
    AttributeKind,
    ClassEntry,
    ClassModel,
    ClassStereotype,
    Constant,
    Import,
    ImportedName,
    Visibility,
)
from .registry import register_engine

logger = logging.getLogger(__name__)


class SlitherEngine(AnalysisEngine):
    """Adapter around slither-analyzer."""

    name = "slither"

    def __init__(self, project_path: str, *, solc_version: Optional[str] = None) -> None:
        super().__init__(project_path, solc_version=solc_version)
        self._slither = None
        self._model: Optional[ClassModel] = None
        self._seen: Dict[Tuple[str, str], ClassEntry] = {}

    def load(self) -> ClassModel:
        slither = self._build_slither()
        self._model = ClassModel(
            engine_metadata={
                "engine": self.name,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        self._model.engine_metadata.update(self._collect_engine_metadata(slither))
        self._seen = {}

        for compilation_unit in self._compilation_units(slither):
            for contract in getattr(compilation_unit, "contracts", []):
                self._convert_contract(contract)
            for structure in getattr(compilation_unit, "structures_top_level", []) or []:
                self._convert_structure(structure, parent=None)
            for enum in getattr(compilation_unit, "enums_top_level", []) or []:
                self._convert_enum(enum, parent=None)
            for variable in getattr(compilation_unit, "variables_top_level", []) or []:
                self._convert_top_level_constant(variable)

        self._slither = slither
        model = self._model
        logger.debug("Converted %d classes from %s", len(model.classes), self.project_path)
        return model

    def _build_slither(self):
        try:
            from slither.slither import Slither as SlitherAnalyzer
        except ImportError as exc:
            raise EngineError(
                "Slither engine requires the slither-analyzer package. "
                "Install via `pip install slither-analyzer`."
            ) from exc

        kwargs = {}
        if self.solc_version:
            kwargs["solc"] = self.solc_version

        try:
            return SlitherAnalyzer(self.project_path, **kwargs)
        except Exception as exc:  # pragma: no cover
            raise EngineError(f"Failed to analyze project with Slither: {exc}") from exc

    @staticmethod
    def _compilation_units(slither) -> Iterable:
        units = getattr(slither, "compilation_units", None)
        if units:
            return units
        return [slither]

    def _collect_engine_metadata(self, slither) -> dict:
        metadata = {}
        compilation_unit = getattr(slither, "compilation_unit", None)
        if compilation_unit is not None:
            compiler_version = getattr(compilation_unit, "compiler_version", None)
            if compiler_version:
                metadata["solc_version"] = str(getattr(compiler_version, "version", compiler_version))
        return metadata

    def _register(self, entry: ClassEntry) -> ClassEntry:
        key = (entry.path, f"{entry.parent_id}:{entry.name}" if entry.parent_id is not None else entry.name)
        existing = self._seen.get(key)
        if existing is not None:
            return existing
        self._model.register_class(entry)
        self._seen[key] = entry
        return entry

    def _new_entry(self, obj, name: str, stereotype: ClassStereotype, parent: Optional[ClassEntry]) -> ClassEntry:
        path, display_path = self._resolve_paths(getattr(obj, "source_mapping", None))
        if parent is not None and not path:
            path, display_path = parent.path, parent.display_path
        return ClassEntry(
            id=self._model.next_id(),
            name=name,
            stereotype=stereotype,
            path=path,
            display_path=display_path,
            imports=self._convert_imports(obj) if parent is None else list(parent.imports),
            parent_id=parent.id if parent is not None else None,
        )

    def _convert_contract(self, contract) -> ClassEntry:
        path, _ = self._resolve_paths(getattr(contract, "source_mapping", None))
        existing = self._seen.get((path, contract.name))
        if existing is not None:
            return existing

        entry = self._register(self._new_entry(contract, contract.name, self._stereotype(contract), None))
        for base in getattr(contract, "immediate_inheritance", []) or []:
            entry.add_association(Association(target_name=base.name, is_inheritance_edge=True))

        for variable in self._declared(contract, "state_variables_declared", "state_variables"):
            attribute = self._convert_variable(variable)
            if attribute is None:
                continue
            entry.attributes.append(attribute)
            if attribute.is_compiled_constant:
                value = self._constant_value(variable)
                if value is not None:
                    entry.constants.append(Constant(attribute.name, value))

        for structure in self._declared(contract, "structures_declared", "structures"):
            entry.struct_ids.append(self._convert_structure(structure, parent=entry).id)
        for enum in self._declared(contract, "enums_declared", "enums"):
            entry.enum_ids.append(self._convert_enum(enum, parent=entry).id)
        return entry

    @staticmethod
    def _declared(contract, declared_attr: str, fallback_attr: str) -> List:
        declared = getattr(contract, declared_attr, None)
        if declared is not None:
            return list(declared)
        return list(getattr(contract, fallback_attr, []) or [])

    @staticmethod
    def _stereotype(contract) -> ClassStereotype:
        kind = getattr(contract, "contract_kind", "contract")
        if kind == "interface" or getattr(contract, "is_interface", False):
            return ClassStereotype.INTERFACE
        if kind == "library" or getattr(contract, "is_library", False):
            return ClassStereotype.LIBRARY
        if getattr(contract, "is_abstract", False):
            return ClassStereotype.ABSTRACT
        return ClassStereotype.CONTRACT

    def _convert_structure(self, structure, parent: Optional[ClassEntry]) -> ClassEntry:
        entry = self._register(self._new_entry(structure, structure.name, ClassStereotype.STRUCT, parent))
        if entry.attributes:
            return entry
        members = getattr(structure, "elems_ordered", None)
        if members is None:
            members = list((getattr(structure, "elems", None) or {}).values())
        for member in members:
            attribute = self._convert_variable(member)
            if attribute is not None:
                entry.attributes.append(attribute)
        return entry

    def _convert_enum(self, enum, parent: Optional[ClassEntry]) -> ClassEntry:
        entry = self._register(self._new_entry(enum, enum.name, ClassStereotype.ENUM, parent))
        if not entry.enum_values:
            entry.enum_values = [str(value) for value in getattr(enum, "values", []) or []]
        return entry

    def _convert_top_level_constant(self, variable) -> None:
        value = self._constant_value(variable)
        if value is None:
            return
        entry = self._register(self._new_entry(variable, variable.name, ClassStereotype.CONSTANT, None))
        if entry.get_constant(variable.name) is None:
            entry.constants.append(Constant(variable.name, value))

    def _convert_variable(self, variable) -> Optional[Attribute]:
        solidity_type = getattr(variable, "type", None)
        if solidity_type is None:
            return None
        type_string, kind = self._convert_type(solidity_type)
        return Attribute(
            name=str(variable.name),
            type_string=type_string,
            kind=kind,
            visibility=self._visibility(getattr(variable, "visibility", None)),
            is_compiled_constant=bool(
                getattr(variable, "is_constant", False) or getattr(variable, "is_immutable", False)
            ),
        )

    @staticmethod
    def _convert_type(solidity_type) -> Tuple[str, AttributeKind]:
        from slither.core.solidity_types import (
            ArrayType,
            ElementaryType,
            FunctionType,
            MappingType,
            UserDefinedType,
        )

        try:
            from slither.core.solidity_types import TypeAlias
        except ImportError:  # pragma: no cover - older slither releases
            TypeAlias = ()

        if TypeAlias and isinstance(solidity_type, TypeAlias):
            # user defined value types are stored as their underlying type
            return str(solidity_type.underlying_type), AttributeKind.ELEMENTARY
        if isinstance(solidity_type, ElementaryType):
            return str(solidity_type), AttributeKind.ELEMENTARY
        if isinstance(solidity_type, ArrayType):
            return str(solidity_type), AttributeKind.ARRAY
        if isinstance(solidity_type, MappingType):
            return str(solidity_type), AttributeKind.MAPPING
        if isinstance(solidity_type, UserDefinedType):
            return str(solidity_type), AttributeKind.USER_DEFINED
        if isinstance(solidity_type, FunctionType):
            return str(solidity_type), AttributeKind.FUNCTION
        raise EngineError(f"Unsupported Solidity type {solidity_type!r}")

    @staticmethod
    def _visibility(value) -> Visibility:
        for visibility in Visibility:
            if visibility.value.lower() == str(value).lower():
                return visibility
        return Visibility.NONE

    @staticmethod
    def _constant_value(variable) -> Optional[int]:
        expression = getattr(variable, "expression", None)
        if expression is None:
            return None
        raw = getattr(expression, "converted_value", None) or getattr(expression, "value", None) or expression
        try:
            return int(str(raw).replace("_", ""), 0)
        except ValueError:
            logger.debug("Skipping non literal constant %s = %s", variable.name, raw)
            return None

    def _convert_imports(self, obj) -> List[Import]:
        file_scope = getattr(obj, "file_scope", None)
        imports = []
        for directive in getattr(file_scope, "imports", None) or []:
            filename = getattr(directive, "filename_path", None) or getattr(directive, "filename", None)
            if not filename:
                continue
            renaming = getattr(directive, "renaming", None) or {}
            names = [ImportedName(original, alias) for alias, original in renaming.items()]
            imports.append(Import(absolute_path=os.path.abspath(str(filename)), names=names))
        imports.sort(key=lambda import_: import_.absolute_path)
        return imports

    def _resolve_paths(self, source_mapping) -> Tuple[str, str]:
        if source_mapping is None:
            return "", ""
        filename = getattr(source_mapping, "filename", None)
        if not filename:
            return "", ""
        absolute = None
        for attr in ("absolute", "full_path", "path"):
            value = getattr(filename, attr, None)
            if value:
                absolute = os.path.abspath(str(value))
                break
        if absolute is None:
            absolute = os.path.abspath(str(filename))
        relative = getattr(filename, "relative", None) or getattr(filename, "short", None)
        return absolute, str(relative or absolute)


register_engine(
    SlitherEngine.name,
    SlitherEngine,
    description="Class model built with slither-analyzer.",
    override=True,
)
