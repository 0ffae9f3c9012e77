"""Turn raw 32 byte slot words into display values."""

from __future__ import annotations

import html
import logging
from typing import Optional

from web3 import Web3

from .layout import SLOT_SIZE, SIZED_ELEMENTARY, normalize_type
from .models import AttributeKind, StorageSection, Variable

logger = logging.getLogger(__name__)


class DecodeError(ValueError):
    """A slot value can not be decoded for the variable's type."""


def slot_bytes(raw_slot_value: str) -> bytes:
    """32 byte big endian word of a hex slot value."""
    value = raw_slot_value[2:] if raw_slot_value[:2].lower() == "0x" else raw_slot_value
    if len(value) > SLOT_SIZE * 2:
        raise DecodeError(f"Slot value {raw_slot_value} is longer than 32 bytes")
    try:
        return bytes.fromhex(value.rjust(SLOT_SIZE * 2, "0"))
    except ValueError as exc:
        raise DecodeError(f"Slot value {raw_slot_value} is not hex") from exc


def variable_bytes(variable: Variable) -> bytes:
    """Bytes of a variable packed into a slot, counted from the right."""
    word = slot_bytes(variable.raw_slot_value)
    end = SLOT_SIZE - variable.byte_offset
    start = end - variable.byte_size
    if start < 0:
        raise DecodeError(f"Variable {variable.name} does not fit in one slot")
    return word[start:end]


def dynamic_slot_size(raw_slot_value: str) -> int:
    """Byte length of a long form string or bytes value, 0 for the short form.

    Long values store `2 * length + 1` in their slot so the lowest bit is set.
    """
    value = int(raw_slot_value, 16)
    if value & 1 == 0:
        return 0
    return (value - 1) // 2


def short_form_length(raw_slot_value: str) -> int:
    """Length of a string or bytes value stored in its own slot.

    The last byte holds `2 * length`.
    """
    return (int(raw_slot_value, 16) >> 1) & 0x3F


def commify(value: int) -> str:
    return f"{value:,}"


def escape_label(value: str) -> str:
    """Make a decoded string safe to embed in a diagram label."""
    escaped = html.escape(value, quote=True)
    return "".join(
        char if char.isprintable() else f"\\x{ord(char):02x}"
        for char in escaped
    )


def _decode_elementary(variable: Variable) -> Optional[str]:
    type_string = normalize_type(variable.type_string)
    data = variable_bytes(variable)

    if type_string == "bool":
        if data[-1:] == b"\x00" and not any(data[:-1]):
            return "false"
        if data[-1:] == b"\x01" and not any(data[:-1]):
            return "true"
        raise DecodeError(f"Invalid bool value 0x{data.hex()}")

    if type_string == "address":
        return Web3.to_checksum_address("0x" + data[-20:].hex())

    if type_string in ("string", "bytes"):
        if variable.is_dynamic:
            return _decode_short_form(type_string, variable.raw_slot_value)
        # chunk of a long value
        return _render_bytes(type_string, data)

    if type_string in ("uint", "int"):
        type_string += "256"
    if type_string.startswith(("ufixed", "fixed")):
        return None

    match = SIZED_ELEMENTARY.match(type_string)
    if match is None:
        raise DecodeError(f"Can not decode type {variable.type_string}")
    family = match.group(1)
    if family == "bytes":
        return "0x" + data.hex()
    value = int.from_bytes(data, "big")
    if family == "int":
        bits = int(match.group(2))
        if value >= 1 << (bits - 1):
            value -= 1 << bits
    return commify(value)


def _decode_short_form(type_string: str, raw_slot_value: str) -> Optional[str]:
    if dynamic_slot_size(raw_slot_value):
        # long form, the value lives in its own section
        return None
    length = short_form_length(raw_slot_value)
    if length > SLOT_SIZE - 1:
        raise DecodeError(f"Short {type_string} length {length} does not fit in a slot")
    return _render_bytes(type_string, slot_bytes(raw_slot_value)[:length])


def _render_bytes(type_string: str, data: bytes) -> str:
    if type_string == "string":
        return escape_label(data.decode("utf-8", errors="replace"))
    return "0x" + data.hex()


def _decode(variable: Variable) -> Optional[str]:
    kind = variable.kind
    if kind is AttributeKind.ELEMENTARY:
        return _decode_elementary(variable)
    if kind is AttributeKind.USER_DEFINED:
        if variable.enum_value_names is not None:
            index = int.from_bytes(variable_bytes(variable), "big")
            if index >= len(variable.enum_value_names):
                raise DecodeError(f"Enum index {index} out of range for {variable.type_string}")
            return variable.enum_value_names[index]
        if variable.byte_size == 20:
            # contracts and interfaces are stored as their address
            return Web3.to_checksum_address("0x" + variable_bytes(variable).hex())
        return None
    if kind is AttributeKind.FUNCTION:
        return "0x" + variable_bytes(variable).hex()
    if kind is AttributeKind.ARRAY:
        if variable.is_dynamic:
            # dynamic arrays hold their length
            return commify(int.from_bytes(variable_bytes(variable), "big"))
        return None
    if kind is AttributeKind.MAPPING:
        return None
    raise ValueError(f"Unknown attribute kind {kind}")


def decode_variable(variable: Variable) -> Optional[str]:
    """Decoded value of a variable, or None when it has none.

    Values that can not be decoded are logged and give None.
    """
    if variable.raw_slot_value is None:
        return None
    try:
        return _decode(variable)
    except DecodeError as exc:
        logger.warning("Could not decode %s %s: %s", variable.type_string, variable.name, exc)
        return None


def decode_dynamic_value(variable: Variable, chunk_section: StorageSection) -> Optional[str]:
    """Join the chunks of a long string or bytes value.

    Returns None when the section only holds the first part of the value.
    """
    if sum(chunk.byte_size for chunk in chunk_section.variables) < (chunk_section.array_length or 0):
        return None
    data = b""
    for chunk in chunk_section.variables:
        if chunk.raw_slot_value is None:
            return None
        try:
            data += variable_bytes(chunk)
        except DecodeError as exc:
            logger.warning("Could not decode chunk of %s: %s", variable.name, exc)
            return None
    return _render_bytes(normalize_type(variable.type_string), data)
