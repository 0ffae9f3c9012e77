"""Class model builders and a fake JSON-RPC node for the tests."""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Sequence

from solidity_storage_tool.core.layout import is_elementary
from solidity_storage_tool.core.models import (
    Association,
    Attribute,
    AttributeKind,
    ClassEntry,
    ClassModel,
    ClassStereotype,
    Constant,
    Import,
)


def attribute(name: str, type_string: str, constant: bool = False) -> Attribute:
    if type_string.startswith("mapping("):
        kind = AttributeKind.MAPPING
    elif type_string.endswith("]"):
        kind = AttributeKind.ARRAY
    elif type_string.startswith("function"):
        kind = AttributeKind.FUNCTION
    elif is_elementary(type_string):
        kind = AttributeKind.ELEMENTARY
    else:
        kind = AttributeKind.USER_DEFINED
    return Attribute(name=name, type_string=type_string, kind=kind, is_compiled_constant=constant)


class ModelBuilder:
    """Builds class models the way an engine would supply them."""

    def __init__(self) -> None:
        self.model = ClassModel()

    def add(
        self,
        name: str,
        stereotype: ClassStereotype = ClassStereotype.CONTRACT,
        *,
        path: str = "/project/src/Main.sol",
        attributes: Sequence[tuple] = (),
        parents: Iterable[str] = (),
        imports: Iterable[Import] = (),
        declared_in: Optional[ClassEntry] = None,
        constants: Iterable[Constant] = (),
        enum_values: Iterable[str] = (),
    ) -> ClassEntry:
        entry = ClassEntry(
            id=self.model.next_id(),
            name=name,
            stereotype=stereotype,
            path=path,
            display_path=path.replace("/project/", ""),
            imports=list(imports),
            attributes=[attribute(*item) for item in attributes],
            constants=list(constants),
            parent_id=declared_in.id if declared_in is not None else None,
            enum_values=list(enum_values),
        )
        for parent in parents:
            entry.add_association(Association(target_name=parent, is_inheritance_edge=True))
        if declared_in is not None:
            if stereotype is ClassStereotype.STRUCT:
                declared_in.struct_ids.append(entry.id)
            elif stereotype is ClassStereotype.ENUM:
                declared_in.enum_ids.append(entry.id)
        self.model.register_class(entry)
        return entry


class FakeTransport:
    """Answers eth_getStorageAt batches from an in memory storage map."""

    def __init__(self, storage: Optional[Dict[int, str]] = None, *, reverse: bool = False) -> None:
        self.storage = storage or {}
        self.reverse = reverse
        self.calls: List[Any] = []

    async def post(self, url: str, payload: Any) -> Any:
        self.calls.append(payload)
        responses = [
            {
                "jsonrpc": "2.0",
                "id": request["id"],
                "result": self.storage.get(int(request["params"][1], 16), "0x" + "00" * 32),
            }
            for request in payload
        ]
        if self.reverse:
            responses.reverse()
        return responses


def word(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def run(coroutine):
    return asyncio.run(coroutine)
