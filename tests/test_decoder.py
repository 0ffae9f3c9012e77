import pytest
from web3 import Web3

from helpers import word

from solidity_storage_tool.core.decoder import (
    commify,
    decode_dynamic_value,
    decode_variable,
    dynamic_slot_size,
    escape_label,
)
from solidity_storage_tool.core.layout import build_dynamic_bytes_section
from solidity_storage_tool.core.models import AttributeKind, IdAllocator, Variable


def _variable(type_string, raw, *, kind=AttributeKind.ELEMENTARY, offset=0, size=32, dynamic=False, **kwargs):
    return Variable(
        id=1,
        from_slot=0,
        to_slot=0,
        byte_offset=offset,
        byte_size=size,
        type_string=type_string,
        kind=kind,
        is_dynamic=dynamic,
        name="value",
        raw_slot_value=raw,
        **kwargs,
    )


def _short(data: bytes) -> str:
    return "0x" + data.ljust(31, b"\x00").hex() + f"{len(data) * 2:02x}"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("0x0000000000000000000000000000000000000000000000000000000000000000", 0),
        ("0x1000000000000000000000000000000000000000000000000000000000000000", 0),
        ("0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF00", 0),
        ("0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFF0", 0),
        ("0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFE", 0),
        ("0x0000000000000000000000000000000000000000000000000000000000000001", 0),
        ("0x0000000000000000000000000000000000000000000000000000000000000002", 0),
        ("0x0000000000000000000000000000000000000000000000000000000000000003", 1),
        ("0x0000000000000000000000000000000000000000000000000000000000000009", 4),
        ("0x000000000000000000000000000000000000000000000000000000000000000B", 5),
        ("0x0000000000000000000000000000000000000000000000000000000000000015", 10),
        ("0x000000000000000000000000000000000000000000000000000000000000003F", 31),
        ("0x0000000000000000000000000000000000000000000000000000000000000040", 0),
        ("0x0000000000000000000000000000000000000000000000000000000000000041", 32),
        ("0x0000000000000000000000000000000000000000000000000000000000000042", 0),
        ("0x0000000000000000000000000000000000000000000000000000000000000043", 33),
        ("0x0000000000000000000000000000000000000000000000000000000000000101", 128),
        ("0x0000000000000000000000000000000000000000000000000000000000100001", 524288),
    ],
)
def test_dynamic_slot_size(value, expected):
    assert dynamic_slot_size(value) == expected


def test_bool_values():
    assert decode_variable(_variable("bool", word(1), size=1)) == "true"
    assert decode_variable(_variable("bool", word(0), size=1)) == "false"
    assert decode_variable(_variable("bool", word(0x0100), size=1, offset=1)) == "true"


def test_malformed_bool_has_no_value(caplog):
    assert decode_variable(_variable("bool", word(2), size=1)) is None
    assert "Invalid bool" in caplog.text


def test_address_is_checksummed():
    raw = "0x000000000000000000000000fcb19e6a322b27c06842a71e8c725399f049ae3a"

    value = decode_variable(_variable("address", raw, size=20))

    assert value == Web3.to_checksum_address("0xfcb19e6a322b27c06842a71e8c725399f049ae3a")
    assert value != value.lower()


def test_packed_unsigned_integers():
    raw = word((0xAB7 << 32) | 0xA96)

    assert decode_variable(_variable("uint32", raw, size=4)) == "2,710"
    assert decode_variable(_variable("uint32", raw, size=4, offset=4)) == "2,743"
    assert decode_variable(_variable("uint256", word(1234567))) == "1,234,567"
    assert decode_variable(_variable("uint", word(0))) == "0"


def test_signed_integers_use_twos_complement():
    assert decode_variable(_variable("int8", word(0xFF), size=1)) == "-1"
    assert decode_variable(_variable("int16", word(0x8000), size=2)) == "-32,768"
    assert decode_variable(_variable("int16", word(0x7FFF), size=2)) == "32,767"
    assert decode_variable(_variable("int256", word(2**256 - 5))) == "-5"


def test_fixed_bytes_render_as_hex():
    raw = word(0xDEADBEEF)

    assert decode_variable(_variable("bytes4", raw, size=4)) == "0xdeadbeef"
    assert decode_variable(_variable("bytes2", raw, size=2, offset=2)) == "0xdead"


def test_short_strings():
    assert decode_variable(_variable("string", _short(b"hello"), dynamic=True)) == "hello"
    assert decode_variable(_variable("string", word(0), dynamic=True)) == ""
    assert decode_variable(_variable("string", _short(b"<b>"), dynamic=True)) == "&lt;b&gt;"


def test_last_byte_0x0a_is_a_five_byte_string():
    raw = "0x" + b"abcde".hex() + "00" * 26 + "0a"

    assert decode_variable(_variable("string", raw, dynamic=True)) == "abcde"


def test_long_string_is_decoded_from_its_section():
    assert decode_variable(_variable("string", word(2 * 40 + 1), dynamic=True)) is None


def test_short_length_above_slot_has_no_value():
    raw = "0x" + "61" * 31 + "40"

    assert decode_variable(_variable("string", raw, dynamic=True)) is None


def test_short_bytes_render_as_hex():
    assert decode_variable(_variable("bytes", _short(b"\x01\x02"), dynamic=True)) == "0x0102"


def test_enum_values():
    names = ["Active", "Paused"]
    kind = AttributeKind.USER_DEFINED

    assert decode_variable(_variable("Status", word(1), kind=kind, size=1, enum_value_names=names)) == "Paused"
    assert decode_variable(_variable("Status", word(5), kind=kind, size=1, enum_value_names=names)) is None


def test_contract_typed_value_is_an_address():
    raw = "0x000000000000000000000000fcb19e6a322b27c06842a71e8c725399f049ae3a"

    value = decode_variable(_variable("IERC20", raw, kind=AttributeKind.USER_DEFINED, size=20))

    assert value.lower() == "0xfcb19e6a322b27c06842a71e8c725399f049ae3a"


def test_values_without_decoding():
    assert decode_variable(_variable("Pair", word(1), kind=AttributeKind.USER_DEFINED, size=64)) is None
    assert decode_variable(_variable("mapping(address => uint256)", word(0), kind=AttributeKind.MAPPING)) is None
    assert decode_variable(_variable("uint256", None)) is None
    assert decode_variable(_variable("fixed", word(1))) is None
    assert decode_variable(_variable("uint8[3]", word(1), kind=AttributeKind.ARRAY, size=32)) is None


def test_dynamic_array_slot_holds_its_length():
    variable = _variable("address[]", word(3000), kind=AttributeKind.ARRAY, dynamic=True)

    assert decode_variable(variable) == "3,000"


def test_function_type_renders_as_hex():
    raw = word(0x1234)
    variable = _variable("function() external", raw, kind=AttributeKind.FUNCTION, size=24)

    assert decode_variable(variable) == "0x" + "00" * 22 + "1234"


def test_long_string_chunks_are_joined():
    owner = _variable("string", word(2 * 40 + 1), dynamic=True)
    section = build_dynamic_bytes_section(owner, 0, 40, IdAllocator())
    first, last = section.variables
    first.raw_slot_value = "0x" + (b"a" * 32).hex()
    last.raw_slot_value = "0x" + (b"b" * 8).hex() + "00" * 24

    assert (last.byte_offset, last.byte_size) == (24, 8)
    assert decode_variable(last) == "bbbbbbbb"
    assert decode_dynamic_value(owner, section) == "a" * 32 + "b" * 8


def test_long_value_with_missing_chunk():
    owner = _variable("bytes", word(2 * 33 + 1), dynamic=True)
    section = build_dynamic_bytes_section(owner, 0, 33, IdAllocator())

    assert decode_dynamic_value(owner, section) is None


def test_truncated_long_value_is_not_decoded():
    owner = _variable("string", word(2 * 100 + 1), dynamic=True)
    section = build_dynamic_bytes_section(owner, 0, 100, IdAllocator(), max_slots=2)
    for chunk in section.variables:
        chunk.raw_slot_value = "0x" + (b"a" * 32).hex()

    assert len(section.variables) == 2
    assert section.array_length == 100
    assert decode_variable(section.variables[0]) == "a" * 32
    assert decode_dynamic_value(owner, section) is None


def test_formatting_helpers():
    assert commify(-1234567) == "-1,234,567"
    assert commify(999) == "999"
    assert escape_label('say "hi"\n') == "say &quot;hi&quot;\\x0a"
