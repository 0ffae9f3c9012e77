"""Storage layout engine.

Walks a contract's state variables, parents first, and packs them into 32 byte
slots the way the Solidity compiler does. Arrays and structs get their own
storage sections linked from the variable that owns them.

See https://docs.soliditylang.org/en/latest/internals/layout_in_storage.html
"""

from __future__ import annotations

import logging
import math
import re
from copy import copy
from typing import Dict, List, Optional, Set, Tuple

from web3 import Web3

from .associations import resolve_association
from .models import (
    Association,
    Attribute,
    AttributeKind,
    ClassEntry,
    ClassModel,
    ClassStereotype,
    IdAllocator,
    StorageSection,
    StorageSectionKind,
    Variable,
    find_section,
)

logger = logging.getLogger(__name__)

SLOT_SIZE = 32

_UNSIZED_ELEMENTARY = {"bool", "address", "string", "bytes", "uint", "int", "ufixed", "fixed"}
SIZED_ELEMENTARY = re.compile(r"^(u?int|bytes)(\d+)$")
_FIXED_POINT = re.compile(r"^u?fixed(\d+)x(\d+)$")
_ARRAY_DIMENSION = re.compile(r"\[([^\[\]]*)\]")


class StorageLayoutError(RuntimeError):
    """Base error for layouts that can not be built."""


class ContractNotFoundError(StorageLayoutError):
    pass


class ResolutionError(StorageLayoutError):
    """A type reference could not be found in the import or inheritance graph."""


class UnsupportedTypeError(StorageLayoutError):
    pass


class DimensionError(StorageLayoutError):
    """A fixed array dimension is neither a literal nor a known constant."""


def normalize_type(type_string: str) -> str:
    type_string = " ".join(type_string.split())
    if type_string == "address payable":
        return "address"
    return type_string


def is_elementary(type_string: str) -> bool:
    type_string = normalize_type(type_string)
    if type_string in _UNSIZED_ELEMENTARY:
        return True
    return bool(SIZED_ELEMENTARY.match(type_string) or _FIXED_POINT.match(type_string))


def split_type_name(type_string: str) -> Tuple[str, Optional[str]]:
    """Split `Parent.Child` into ("Child", "Parent")."""
    parts = type_string.strip().split(".")
    if len(parts) == 1:
        return parts[0], None
    return parts[-1], parts[-2]


def split_array_type(type_string: str) -> Tuple[str, List[str]]:
    """Return the element type and the dimensions, left to right.

    `address[][3]` gives ("address", ["", "3"]).
    """
    start = type_string.index("[")
    return type_string[:start].strip(), _ARRAY_DIMENSION.findall(type_string[start:])


def mapping_value_type(type_string: str) -> Optional[str]:
    """Value type of a possibly nested mapping, eg `S` in mapping(a => mapping(b => S))."""
    if "=>" not in type_string:
        return None
    value_type = type_string.rsplit("=>", 1)[1].strip()
    while value_type.endswith(")"):
        value_type = value_type[:-1].strip()
    return value_type or None


def element_position(index: int, item_size: int) -> Tuple[int, int, int]:
    """(from_slot, to_slot, byte_offset) of an array element relative to the array start.

    Elements of 16 bytes or less are packed several to a slot; larger
    elements always start a new slot.
    """
    if item_size <= SLOT_SIZE // 2:
        per_slot = SLOT_SIZE // item_size
        slot = index // per_slot
        return slot, slot, (index % per_slot) * item_size
    slots = math.ceil(item_size / SLOT_SIZE)
    return index * slots, index * slots + slots - 1, 0


def array_slot_count(length: int, item_size: int) -> int:
    if length <= 0:
        return 0
    return element_position(length - 1, item_size)[1] + 1


def calc_section_offset(slot_key: int) -> int:
    """Start of the data of a dynamic array, string or bytes stored at `slot_key`."""
    return int.from_bytes(Web3.keccak(slot_key.to_bytes(32, "big")), "big")


def calc_get_value(
    kind: AttributeKind,
    dynamic: bool,
    reference_kind: Optional[StorageSectionKind] = None,
) -> bool:
    """Should the slot value of a variable be fetched and displayed.

    Elementary types, dynamic arrays and user defined types that are not
    structs (enums, contracts) have a value of their own.
    """
    if kind is AttributeKind.ELEMENTARY:
        return True
    if kind is AttributeKind.USER_DEFINED:
        return reference_kind is not StorageSectionKind.STRUCT
    if kind is AttributeKind.ARRAY:
        return dynamic
    if kind in (AttributeKind.MAPPING, AttributeKind.FUNCTION):
        return False
    raise ValueError(f"Unknown attribute kind {kind}")


def _elementary_byte_size(type_string: str) -> Tuple[int, bool]:
    type_string = normalize_type(type_string)
    if type_string == "bool":
        return 1, False
    if type_string == "address":
        return 20, False
    if type_string in ("string", "bytes"):
        return SLOT_SIZE, True
    if type_string in ("uint", "int", "ufixed", "fixed"):
        return SLOT_SIZE, False

    match = SIZED_ELEMENTARY.match(type_string)
    if match is None:
        raise UnsupportedTypeError(f'Failed to size elementary type "{type_string}"')
    if match.group(1) == "bytes":
        size = int(match.group(2))
    else:
        bits = int(match.group(2))
        if bits % 8:
            raise UnsupportedTypeError(f'Invalid integer bit size in "{type_string}"')
        size = bits // 8
    if not 0 < size <= SLOT_SIZE:
        raise UnsupportedTypeError(f'Invalid byte size {size} for "{type_string}"')
    return size, False


class StorageLayoutBuilder:
    """Builds the storage sections of one contract."""

    def __init__(self, model: ClassModel, ids: Optional[IdAllocator] = None) -> None:
        self.model = model
        self.ids = ids or IdAllocator()
        self.sections: List[StorageSection] = []
        self._resolved: Dict[Tuple[int, str], ClassEntry] = {}
        # structs currently being expanded, guards recursive struct types
        self._struct_stack: List[int] = []

    def build(self, contract_name: str, filename: Optional[str] = None) -> List[StorageSection]:
        contract = self.model.find_class(contract_name, filename)
        if contract is None:
            in_file = f' in filename "{filename}"' if filename else ""
            raise ContractNotFoundError(f'Failed to find contract with name "{contract_name}"{in_file}')
        logger.debug("Found contract %s in %s", contract_name, contract.path)

        root = StorageSection(
            id=self.ids.section_id(),
            name=contract_name,
            kind=StorageSectionKind.CONTRACT,
        )
        self.sections = [root]
        root.variables = self.collect_variables(contract)
        adjust_slots(root, 0, self.sections)
        logger.debug(
            "Built %d storage sections for %s with %d contract variables",
            len(self.sections),
            contract_name,
            len(root.variables),
        )
        return self.sections

    def collect_variables(
        self,
        entry: ClassEntry,
        variables: Optional[List[Variable]] = None,
        inherited: Optional[Set[str]] = None,
    ) -> List[Variable]:
        """Storage variables of `entry`, inherited contracts first.

        `variables` and `inherited` are shared across the recursion so every
        ancestor is laid out once, however many paths lead to it.
        """
        if variables is None:
            variables = []
        if inherited is None:
            inherited = set()

        new_parents = [
            parent for parent in entry.parent_contracts() if parent.target_name not in inherited
        ]
        inherited.update(parent.target_name for parent in new_parents)
        for parent_association in new_parents:
            parent = resolve_association(parent_association, entry, self.model)
            if parent is None:
                raise ResolutionError(
                    f'Failed to find inherited contract "{parent_association.target_name}" of "{entry.path}"'
                )
            self.collect_variables(parent, variables, inherited)

        for attribute in entry.attributes:
            if attribute.is_compiled_constant:
                continue
            variables.append(self._pack_attribute(attribute, entry, variables))
        return variables

    def _pack_attribute(self, attribute: Attribute, entry: ClassEntry, variables: List[Variable]) -> Variable:
        byte_size, dynamic = self.calc_byte_size(attribute, entry)
        reference = self.derive_section(attribute, entry)
        get_value = calc_get_value(attribute.kind, dynamic, reference.kind if reference else None)

        last_to_slot = 0
        next_offset = 0
        if variables:
            last = variables[-1]
            last_to_slot = last.to_slot
            next_offset = last.byte_offset + last.byte_size

        if next_offset + byte_size > SLOT_SIZE:
            from_slot = last_to_slot + 1 if variables else 0
            to_slot = from_slot + (byte_size - 1) // SLOT_SIZE
            byte_offset = 0
        else:
            from_slot = to_slot = last_to_slot
            byte_offset = next_offset

        return Variable(
            id=self.ids.variable_id(),
            from_slot=from_slot,
            to_slot=to_slot,
            byte_offset=byte_offset,
            byte_size=byte_size,
            type_string=attribute.type_string,
            kind=attribute.kind,
            is_dynamic=dynamic,
            name=attribute.name,
            contract_name=entry.name,
            should_fetch_value=get_value,
            should_display_value=get_value,
            reference_section_id=reference.id if reference else None,
            enum_value_names=self._enum_names(attribute, entry),
        )

    def resolve_type(self, type_string: str, context: ClassEntry) -> ClassEntry:
        """Class of a user defined type as seen from `context`."""
        key = (context.id, type_string)
        cached = self._resolved.get(key)
        if cached is not None:
            return cached

        target_name, parent_name = split_type_name(type_string)
        association = Association(target_name=target_name, parent_name=parent_name)
        target = resolve_association(association, context, self.model)
        if target is None:
            target = self._find_type_by_name(target_name, parent_name)
        if target is None:
            raise ResolutionError(
                f'Failed to find user defined type "{type_string}" referenced from "{context.name}"'
            )
        self._resolved[key] = target
        return target

    def _find_type_by_name(self, name: str, parent_name: Optional[str]) -> Optional[ClassEntry]:
        candidates = [
            entry
            for entry in self.model.iter_classes()
            if entry.name == name
            and (
                entry.stereotype in (ClassStereotype.STRUCT, ClassStereotype.ENUM)
                or entry.stereotype.is_contract_like
            )
        ]
        if parent_name is not None:
            qualified = [
                entry
                for entry in candidates
                if entry.parent_id is not None
                and getattr(self.model.get(entry.parent_id), "name", None) == parent_name
            ]
            candidates = qualified or candidates
        if len(candidates) == 1:
            logger.debug("Resolved %s by name only in %s", name, candidates[0].path)
            return candidates[0]
        if candidates:
            logger.debug(
                "%s is ambiguous, declared in %s", name, ", ".join(entry.path or "?" for entry in candidates)
            )
        return None

    def calc_byte_size(self, attribute: Attribute, context: ClassEntry) -> Tuple[int, bool]:
        """(byte size, dynamic) of an attribute."""
        kind = attribute.kind
        if kind in (AttributeKind.MAPPING, AttributeKind.FUNCTION):
            return SLOT_SIZE, True

        if kind is AttributeKind.ARRAY:
            element_type, dimensions = split_array_type(attribute.type_string)
            # fixed size dimensions are read right to left until a dynamic one
            fixed_dimensions: List[int] = []
            for dimension in reversed(dimensions):
                if dimension.strip() == "":
                    break
                fixed_dimensions.append(self.find_dimension_length(context, dimension))

            if not fixed_dimensions:
                # the slot holds the length, the data starts at keccak256(slot)
                return SLOT_SIZE, True

            element_kind = AttributeKind.ELEMENTARY if is_elementary(element_type) else AttributeKind.USER_DEFINED
            element_size, _ = self.calc_byte_size(
                Attribute(name=element_type, type_string=element_type, kind=element_kind),
                context,
            )
            outer_dimensions = math.prod(fixed_dimensions[:-1])
            if len(fixed_dimensions) < len(dimensions):
                # every fixed item holds a dynamic array taking a whole slot
                return SLOT_SIZE * math.prod(fixed_dimensions), False
            inner_slots = array_slot_count(fixed_dimensions[-1], element_size)
            return SLOT_SIZE * inner_slots * outer_dimensions, False

        if kind is AttributeKind.USER_DEFINED:
            target = self.resolve_type(attribute.type_string, context)
            stereotype = target.stereotype
            if stereotype is ClassStereotype.ENUM:
                return 1, False
            if stereotype.is_contract_like:
                return 20, False
            if stereotype is ClassStereotype.STRUCT:
                return self._struct_byte_size(target), False
            if stereotype in (ClassStereotype.NONE, ClassStereotype.CONSTANT, ClassStereotype.IMPORT):
                return SLOT_SIZE, False
            raise ValueError(f"Unknown class stereotype {stereotype}")

        if kind is AttributeKind.ELEMENTARY:
            return _elementary_byte_size(attribute.type_string)

        raise UnsupportedTypeError(
            f'Failed to calc bytes size of attribute "{attribute.name}" of type "{attribute.type_string}"'
        )

    def _struct_byte_size(self, struct: ClassEntry) -> int:
        byte_size = 0
        for member in struct.attributes:
            # arrays and structs always start a new slot
            if member.kind is AttributeKind.ARRAY:
                byte_size = _round_up_to_slot(byte_size)
            elif member.kind is AttributeKind.USER_DEFINED:
                if self.resolve_type(member.type_string, struct).stereotype is ClassStereotype.STRUCT:
                    byte_size = _round_up_to_slot(byte_size)

            member_size, _ = self.calc_byte_size(member, struct)
            end_current_slot = _round_up_to_slot(byte_size)
            if member_size <= end_current_slot - byte_size:
                byte_size += member_size
            else:
                byte_size = end_current_slot + member_size
        return _round_up_to_slot(byte_size)

    def find_dimension_length(self, context: ClassEntry, dimension: str) -> int:
        dimension = dimension.strip()
        try:
            return int(dimension, 0)
        except ValueError:
            pass

        constant = context.get_constant(dimension)
        if constant is None and context.parent_id is not None:
            declaring = self.model.get(context.parent_id)
            if declaring is not None:
                constant = declaring.get_constant(dimension)
        if constant is not None:
            return constant.value

        for entry in self.model.iter_classes():
            if entry.name == dimension and entry.stereotype is ClassStereotype.CONSTANT and entry.constants:
                return entry.constants[0].value

        raise DimensionError(f'Could not size fixed sized array with dimension "{dimension}"')

    def derive_section(self, attribute: Attribute, context: ClassEntry) -> Optional[StorageSection]:
        """Create the storage section an array, struct or mapping of structs points at."""
        kind = attribute.kind
        if kind is AttributeKind.ARRAY:
            return self._derive_array_section(attribute, context)

        if kind is AttributeKind.USER_DEFINED:
            target = self.resolve_type(attribute.type_string, context)
            if target.stereotype is not ClassStereotype.STRUCT or target.id in self._struct_stack:
                return None
            return self._struct_section(target, attribute.type_string)

        if kind is AttributeKind.MAPPING:
            value_type = mapping_value_type(attribute.type_string)
            if value_type is None or is_elementary(value_type) or value_type.endswith("]"):
                return None
            target = self.resolve_type(value_type, context)
            if target.stereotype is not ClassStereotype.STRUCT or target.id in self._struct_stack:
                return None
            section = self._struct_section(target, target.name)
            mark_under_mapping(section, self.sections)
            return section

        return None

    def _struct_section(self, struct: ClassEntry, name: str) -> StorageSection:
        self._struct_stack.append(struct.id)
        try:
            variables = self.collect_variables(struct)
        finally:
            self._struct_stack.pop()
        section = StorageSection(
            id=self.ids.section_id(),
            name=name,
            kind=StorageSectionKind.STRUCT,
            variables=variables,
        )
        self.sections.append(section)
        return section

    def _derive_array_section(self, attribute: Attribute, context: ClassEntry) -> StorageSection:
        type_string = attribute.type_string
        _, dimensions = split_array_type(type_string)
        last_dimension = dimensions[-1].strip()
        dynamic = last_dimension == ""
        array_length = None if dynamic else self.find_dimension_length(context, last_dimension)

        # address[][4][2] has items of type address[][4]
        base_type = type_string[: type_string.rindex("[")].strip()
        if is_elementary(base_type):
            base_kind = AttributeKind.ELEMENTARY
        elif base_type.endswith("]"):
            base_kind = AttributeKind.ARRAY
        else:
            base_kind = AttributeKind.USER_DEFINED
        base_attribute = Attribute(
            name=base_type,
            type_string=base_type,
            kind=base_kind,
            visibility=attribute.visibility,
        )
        item_size, dynamic_base = self.calc_byte_size(base_attribute, context)

        reference = None
        if base_kind is not AttributeKind.ELEMENTARY:
            reference = self.derive_section(base_attribute, context)
        get_value = calc_get_value(base_kind, dynamic_base, reference.kind if reference else None)
        enum_names = self._enum_names(base_attribute, context)

        from_slot, to_slot, byte_offset = element_position(0, item_size)
        first = Variable(
            id=self.ids.variable_id(),
            from_slot=from_slot,
            to_slot=to_slot,
            byte_offset=byte_offset,
            byte_size=item_size,
            type_string=base_type,
            kind=base_kind,
            is_dynamic=dynamic_base,
            should_fetch_value=get_value,
            should_display_value=get_value,
            reference_section_id=reference.id if reference else None,
            enum_value_names=enum_names,
        )
        section = StorageSection(
            id=self.ids.section_id(),
            name=f"{type_string}: {attribute.name}",
            kind=StorageSectionKind.ARRAY,
            variables=[first],
            array_length=array_length,
            is_dynamic_length=dynamic,
        )
        if array_length is not None:
            add_array_elements(section, array_length, self.ids)
        self.sections.append(section)
        return section

    def _enum_names(self, attribute: Attribute, context: ClassEntry) -> Optional[List[str]]:
        if attribute.kind is not AttributeKind.USER_DEFINED:
            return None
        target = self.resolve_type(attribute.type_string, context)
        if target.stereotype is ClassStereotype.ENUM:
            return list(target.enum_values)
        return None


def _round_up_to_slot(byte_size: int) -> int:
    return math.ceil(byte_size / SLOT_SIZE) * SLOT_SIZE


def build_layout(
    contract_name: str,
    model: ClassModel,
    filename: Optional[str] = None,
    ids: Optional[IdAllocator] = None,
) -> List[StorageSection]:
    """Storage sections of a contract, the contract's own section first."""
    return StorageLayoutBuilder(model, ids).build(contract_name, filename)


def adjust_slots(section: StorageSection, slot_offset: int, sections: List[StorageSection]) -> None:
    """Line referenced sections up under the variables that own them.

    Static structs and fixed arrays are shifted by the owning variable's slot.
    Dynamic arrays get their data offset at keccak256 of the owning slot and
    keep their relative slot numbers.
    """
    for variable in section.variables:
        variable.from_slot += slot_offset
        variable.to_slot += slot_offset

        reference = find_section(sections, variable.reference_section_id)
        if reference is None or reference.under_mapping:
            continue
        if not variable.is_dynamic:
            reference.offset = section.offset
            adjust_slots(reference, variable.from_slot, sections)
        elif variable.kind is AttributeKind.ARRAY:
            reference.offset = calc_section_offset(section.slot_key(variable.from_slot))
            adjust_slots(reference, 0, sections)


def mark_under_mapping(section: StorageSection, sections: List[StorageSection]) -> None:
    """Flag a section, and everything it references, as only reachable through a mapping key."""
    section.under_mapping = True
    for variable in section.variables:
        variable.should_fetch_value = False
        variable.should_display_value = False
        reference = find_section(sections, variable.reference_section_id)
        if reference is not None and not reference.under_mapping:
            mark_under_mapping(reference, sections)


def add_array_elements(section: StorageSection, length: int, ids: IdAllocator) -> None:
    """Add a variable for each array index past the first.

    New elements copy the shape of the first element. Only the first element
    keeps its link to a referenced section.
    """
    if not section.variables:
        return
    first = section.variables[0]
    for index in range(len(section.variables), length):
        from_slot, to_slot, byte_offset = element_position(index, first.byte_size)
        element = copy(first)
        element.id = ids.variable_id()
        element.from_slot = first.from_slot + from_slot
        element.to_slot = first.from_slot + to_slot
        element.byte_offset = byte_offset
        element.raw_slot_value = None
        element.decoded_value = None
        element.reference_section_id = None
        section.variables.append(element)


def build_dynamic_bytes_section(
    variable: Variable,
    slot_key: int,
    byte_length: int,
    ids: IdAllocator,
    max_slots: Optional[int] = None,
) -> StorageSection:
    """Section holding the data of a long `string` or `bytes` value stored at `slot_key`.

    Data is left aligned, one chunk variable per 32 bytes. With `max_slots`
    only the first chunks are added while `array_length` keeps the full length.
    """
    last_slot = (byte_length - 1) // SLOT_SIZE
    slot_count = last_slot + 1 if max_slots is None else min(last_slot + 1, max_slots)
    variables = []
    for slot in range(slot_count):
        chunk_size = byte_length - SLOT_SIZE * last_slot if slot == last_slot else SLOT_SIZE
        variables.append(
            Variable(
                id=ids.variable_id(),
                from_slot=slot,
                to_slot=slot,
                byte_offset=SLOT_SIZE - chunk_size,
                byte_size=chunk_size,
                type_string=variable.type_string,
                kind=AttributeKind.ELEMENTARY,
                is_dynamic=False,
                contract_name=variable.contract_name,
                should_fetch_value=True,
                should_display_value=True,
            )
        )
    kind = StorageSectionKind.STRING if normalize_type(variable.type_string) == "string" else StorageSectionKind.BYTES
    return StorageSection(
        id=ids.section_id(),
        name=f"{variable.type_string}: {variable.name}",
        kind=kind,
        variables=variables,
        offset=calc_section_offset(slot_key),
        array_length=byte_length,
        is_dynamic_length=True,
    )
