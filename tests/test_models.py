import pytest

from solidity_storage_tool.core.models import (
    AttributeKind,
    ClassEntry,
    ClassModel,
    ClassStereotype,
    Constant,
    IdAllocator,
    Import,
    ImportedName,
    StorageSection,
    StorageSectionKind,
    Variable,
)
from solidity_storage_tool.engines import ENGINE_REGISTRY, register_engine, resolve_engine


def test_class_model_round_trip(builder):
    vault = builder.add(
        "Vault",
        path="/project/src/Vault.sol",
        attributes=[("owner", "address"), ("FEE", "uint16", True), ("items", "Item[]")],
        parents=["Ownable"],
        imports=[Import("/project/src/Ownable.sol", [ImportedName("Ownable", "Owned")])],
        constants=[Constant("FEE", 30)],
    )
    builder.add("Item", ClassStereotype.STRUCT, path="/project/src/Vault.sol", declared_in=vault)

    restored = ClassModel.from_dict(builder.model.as_dict())

    assert restored.as_dict() == builder.model.as_dict()
    entry = restored.find_class("Vault")
    assert entry.parent_contracts()[0].target_name == "Ownable"
    assert entry.imports[0].names == [ImportedName("Ownable", "Owned")]
    assert not entry.imports[0].is_wildcard
    assert restored.get(entry.struct_ids[0]).name == "Item"


def test_find_class_by_file_name(builder):
    builder.add("Token", path="/project/src/a/Token.sol")
    second = builder.add("Token", path="/project/src/b/Token.sol")

    assert builder.model.find_class("Token", "src/b/Token.sol") is second
    assert builder.model.find_class("Token", "Missing.sol") is None


def test_duplicate_class_ids_are_rejected():
    model = ClassModel([ClassEntry(id=1, name="A")])
    with pytest.raises(ValueError):
        model.register_class(ClassEntry(id=1, name="B"))


def test_id_allocator_continues_after_existing_sections():
    section = StorageSection(
        id=4,
        name="Root",
        kind=StorageSectionKind.CONTRACT,
        variables=[Variable(id=9, from_slot=0, to_slot=0, byte_offset=0, byte_size=32, type_string="uint256", kind=AttributeKind.ELEMENTARY)],
    )

    ids = IdAllocator.after([section])

    assert (ids.section_id(), ids.section_id()) == (5, 6)
    assert ids.variable_id() == 10


def test_section_offsets_serialize_as_hex():
    section = StorageSection(id=1, name="uint256[]: values", kind=StorageSectionKind.ARRAY, offset=255)

    assert section.as_dict()["offset"] == "0xff"
    assert section.slot_key(2) == 257


def test_bundled_engines_are_registered():
    assert {"model", "slither"} <= set(ENGINE_REGISTRY.names())
    with pytest.raises(KeyError):
        resolve_engine("missing")
    with pytest.raises(ValueError):
        register_engine("model", resolve_engine("model").factory)


def test_variable_serializes_display_flags():
    variable = Variable(
        id=3,
        from_slot=1,
        to_slot=1,
        byte_offset=0,
        byte_size=1,
        type_string="Status",
        kind=AttributeKind.USER_DEFINED,
        name="status",
        should_fetch_value=True,
        enum_value_names=["Active", "Paused"],
    )

    payload = variable.as_dict()

    assert payload["fetch_value"] is True
    assert payload["display_value"] is False
    assert payload["enum_values"] == ["Active", "Paused"]
