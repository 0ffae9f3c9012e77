"""Data models shared across solidity_storage_tool components."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional


class ClassStereotype(str, Enum):
    """Kind of declaration a ClassEntry stands for."""

    NONE = "None"
    LIBRARY = "Library"
    INTERFACE = "Interface"
    ABSTRACT = "Abstract"
    CONTRACT = "Contract"
    STRUCT = "Struct"
    ENUM = "Enum"
    CONSTANT = "Constant"
    IMPORT = "Import"

    @property
    def is_contract_like(self) -> bool:
        return self in (
            ClassStereotype.CONTRACT,
            ClassStereotype.ABSTRACT,
            ClassStereotype.INTERFACE,
            ClassStereotype.LIBRARY,
        )


class AttributeKind(str, Enum):
    ELEMENTARY = "Elementary"
    USER_DEFINED = "UserDefined"
    FUNCTION = "Function"
    ARRAY = "Array"
    MAPPING = "Mapping"


class Visibility(str, Enum):
    NONE = "None"
    PUBLIC = "Public"
    EXTERNAL = "External"
    INTERNAL = "Internal"
    PRIVATE = "Private"


class ReferenceKind(str, Enum):
    MEMORY = "Memory"
    STORAGE = "Storage"


class StorageSectionKind(str, Enum):
    CONTRACT = "Contract"
    STRUCT = "Struct"
    ARRAY = "Array"
    BYTES = "Bytes"
    STRING = "String"


@dataclass(frozen=True)
class ImportedName:
    """One `{ClassName as Alias}` entry of an import directive."""

    class_name: str
    alias: Optional[str] = None


@dataclass
class Import:
    """An import directive. No explicit names means a wildcard import."""

    absolute_path: str
    names: List[ImportedName] = field(default_factory=list)

    @property
    def is_wildcard(self) -> bool:
        return not self.names


@dataclass
class Attribute:
    """A state variable, struct member or enum value declaration."""

    name: str
    type_string: str
    kind: AttributeKind = AttributeKind.ELEMENTARY
    visibility: Visibility = Visibility.NONE
    is_compiled_constant: bool = False


@dataclass(frozen=True)
class Association:
    """Reference from a class to a named type."""

    target_name: str
    parent_name: Optional[str] = None
    reference_kind: ReferenceKind = ReferenceKind.STORAGE
    is_inheritance_edge: bool = False

    def with_target(self, target_name: str) -> "Association":
        return replace(self, target_name=target_name)


@dataclass(frozen=True)
class Constant:
    name: str
    value: int


@dataclass
class ClassEntry:
    """Contract, interface, library, struct, enum or file level constant."""

    id: int
    name: str
    stereotype: ClassStereotype = ClassStereotype.CONTRACT
    path: str = ""
    display_path: str = ""
    imports: List[Import] = field(default_factory=list)
    attributes: List[Attribute] = field(default_factory=list)
    associations: List[Association] = field(default_factory=list)
    struct_ids: List[int] = field(default_factory=list)
    enum_ids: List[int] = field(default_factory=list)
    constants: List[Constant] = field(default_factory=list)
    parent_id: Optional[int] = None
    enum_values: List[str] = field(default_factory=list)

    def parent_contracts(self) -> List[Association]:
        """Immediate parents this class inherits from, in declaration order.

        Grand parents are not included; callers recurse for those.
        """
        return [association for association in self.associations if association.is_inheritance_edge]

    def add_association(self, association: Association) -> None:
        if association not in self.associations:
            self.associations.append(association)

    def get_constant(self, name: str) -> Optional[Constant]:
        for constant in self.constants:
            if constant.name == name:
                return constant
        return None

    def as_dict(self) -> Dict[str, object]:
        """Serialize into a JSON friendly dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "stereotype": self.stereotype.value,
            "path": self.path,
            "display_path": self.display_path,
            "imports": [
                {
                    "absolute_path": import_.absolute_path,
                    "names": [
                        {"class_name": name.class_name, "alias": name.alias}
                        for name in import_.names
                    ],
                }
                for import_ in self.imports
            ],
            "attributes": [
                {
                    "name": attribute.name,
                    "type": attribute.type_string,
                    "kind": attribute.kind.value,
                    "visibility": attribute.visibility.value,
                    "compiled": attribute.is_compiled_constant,
                }
                for attribute in self.attributes
            ],
            "associations": [
                {
                    "target": association.target_name,
                    "parent": association.parent_name,
                    "reference": association.reference_kind.value,
                    "inheritance": association.is_inheritance_edge,
                }
                for association in self.associations
            ],
            "struct_ids": list(self.struct_ids),
            "enum_ids": list(self.enum_ids),
            "constants": [{"name": c.name, "value": c.value} for c in self.constants],
            "parent_id": self.parent_id,
            "enum_values": list(self.enum_values),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "ClassEntry":
        imports = [
            Import(
                absolute_path=item["absolute_path"],
                names=[
                    ImportedName(name["class_name"], name.get("alias"))
                    for name in item.get("names", [])
                ],
            )
            for item in payload.get("imports", [])
        ]
        attributes = [
            Attribute(
                name=item["name"],
                type_string=item["type"],
                kind=AttributeKind(item.get("kind", AttributeKind.ELEMENTARY.value)),
                visibility=Visibility(item.get("visibility", Visibility.NONE.value)),
                is_compiled_constant=bool(item.get("compiled", False)),
            )
            for item in payload.get("attributes", [])
        ]
        associations = [
            Association(
                target_name=item["target"],
                parent_name=item.get("parent"),
                reference_kind=ReferenceKind(item.get("reference", ReferenceKind.STORAGE.value)),
                is_inheritance_edge=bool(item.get("inheritance", False)),
            )
            for item in payload.get("associations", [])
        ]
        path = str(payload.get("path", ""))
        return cls(
            id=int(payload["id"]),
            name=str(payload["name"]),
            stereotype=ClassStereotype(payload.get("stereotype", ClassStereotype.CONTRACT.value)),
            path=path,
            display_path=str(payload.get("display_path") or path),
            imports=imports,
            attributes=attributes,
            associations=associations,
            struct_ids=[int(i) for i in payload.get("struct_ids", [])],
            enum_ids=[int(i) for i in payload.get("enum_ids", [])],
            constants=[Constant(c["name"], int(c["value"])) for c in payload.get("constants", [])],
            parent_id=payload.get("parent_id"),
            enum_values=[str(v) for v in payload.get("enum_values", [])],
        )


@dataclass
class ClassModel:
    """Complete set of classes known to one resolution pass."""

    classes: List[ClassEntry] = field(default_factory=list)
    engine_metadata: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._by_id: Dict[int, ClassEntry] = {}
        for entry in self.classes:
            self._index(entry)

    def _index(self, entry: ClassEntry) -> None:
        if entry.id in self._by_id:
            raise ValueError(f"Duplicate class id {entry.id} for {entry.name}")
        self._by_id[entry.id] = entry

    def register_class(self, entry: ClassEntry) -> None:
        self._index(entry)
        self.classes.append(entry)

    def get(self, class_id: int) -> Optional[ClassEntry]:
        return self._by_id.get(class_id)

    def next_id(self) -> int:
        return max(self._by_id, default=-1) + 1

    def iter_classes(self) -> Iterable[ClassEntry]:
        return iter(self.classes)

    def first_in_file(self, path: str) -> Optional[ClassEntry]:
        for entry in self.classes:
            if entry.path == path:
                return entry
        return None

    def find_class(self, name: str, filename: Optional[str] = None) -> Optional[ClassEntry]:
        """Find a class by name, optionally restricted to a declaring file.

        The filename matches either the display path or its basename.
        """
        for entry in self.classes:
            if entry.name != name:
                continue
            if filename is None:
                return entry
            wanted = os.path.normpath(filename)
            if entry.display_path and (
                os.path.normpath(entry.display_path) == wanted
                or os.path.basename(entry.display_path) == wanted
            ):
                return entry
        return None

    def as_dict(self) -> Dict[str, object]:
        return {
            "classes": [entry.as_dict() for entry in self.classes],
            "metadata": dict(self.engine_metadata),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "ClassModel":
        return cls(
            classes=[ClassEntry.from_dict(item) for item in payload.get("classes", [])],
            engine_metadata=dict(payload.get("metadata", {})),
        )


@dataclass
class Variable:
    """One packed field within a storage section.

    Slots are relative to the owning section until offsets are adjusted.
    """

    id: int
    from_slot: int
    to_slot: int
    byte_offset: int
    byte_size: int
    type_string: str
    kind: AttributeKind
    is_dynamic: bool = False
    name: Optional[str] = None
    contract_name: Optional[str] = None
    should_fetch_value: bool = False
    should_display_value: bool = False
    raw_slot_value: Optional[str] = None
    decoded_value: Optional[str] = None
    reference_section_id: Optional[int] = None
    enum_value_names: Optional[List[str]] = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "contract": self.contract_name,
            "type": self.type_string,
            "kind": self.kind.value,
            "from_slot": self.from_slot,
            "to_slot": self.to_slot,
            "byte_offset": self.byte_offset,
            "byte_size": self.byte_size,
            "dynamic": self.is_dynamic,
            "fetch_value": self.should_fetch_value,
            "display_value": self.should_display_value,
            "enum_values": self.enum_value_names,
            "slot_value": self.raw_slot_value,
            "value": self.decoded_value,
            "reference_section": self.reference_section_id,
        }


@dataclass
class StorageSection:
    """A packed region of storage for a contract, struct, array or long string."""

    id: int
    name: str
    kind: StorageSectionKind
    variables: List[Variable] = field(default_factory=list)
    offset: Optional[int] = None
    address: Optional[str] = None
    array_length: Optional[int] = None
    is_dynamic_length: bool = False
    under_mapping: bool = False

    def slot_key(self, slot: int) -> int:
        """Absolute storage key of a slot in this section."""
        return (self.offset or 0) + slot

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "address": self.address,
            "offset": hex(self.offset) if self.offset is not None else None,
            "array_length": self.array_length,
            "dynamic_length": self.is_dynamic_length,
            "mapping": self.under_mapping,
            "variables": [variable.as_dict() for variable in self.variables],
        }


def find_section(sections: Iterable[StorageSection], section_id: Optional[int]) -> Optional[StorageSection]:
    if section_id is None:
        return None
    for section in sections:
        if section.id == section_id:
            return section
    return None


class IdAllocator:
    """Hands out section and variable ids for one layout."""

    def __init__(self, next_section_id: int = 1, next_variable_id: int = 1) -> None:
        self._next_section_id = next_section_id
        self._next_variable_id = next_variable_id

    @classmethod
    def after(cls, sections: Iterable[StorageSection]) -> "IdAllocator":
        """Continue numbering after the ids already used by `sections`."""
        max_section = 0
        max_variable = 0
        for section in sections:
            max_section = max(max_section, section.id)
            for variable in section.variables:
                max_variable = max(max_variable, variable.id)
        return cls(max_section + 1, max_variable + 1)

    def section_id(self) -> int:
        value = self._next_section_id
        self._next_section_id += 1
        return value

    def variable_id(self) -> int:
        value = self._next_variable_id
        self._next_variable_id += 1
        return value
