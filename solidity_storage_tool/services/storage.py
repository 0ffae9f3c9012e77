"""High-level storage layout interface wrapping class model engines."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from ..core.decoder import decode_dynamic_value, decode_variable, dynamic_slot_size
from ..core.engine_base import AnalysisEngine, EngineError
from ..core.layout import (
    SLOT_SIZE,
    StorageLayoutError,
    add_array_elements,
    build_dynamic_bytes_section,
    build_layout,
    normalize_type,
)
from ..core.models import (
    AttributeKind,
    ClassModel,
    ClassStereotype,
    IdAllocator,
    StorageSection,
    StorageSectionKind,
    Variable,
    find_section,
)
from ..engines import resolve_engine
from .slot_values import BlockTag, SlotValueClient, SlotValueError, add_slot_values

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_NAME = "slither"
DEFAULT_MAX_ARRAY_LENGTH = 256


class StorageError(RuntimeError):
    """Raised when a storage layout or its values cannot be produced."""


class StorageService:
    """Entrypoint for contract storage layouts and slot values."""

    def __init__(
        self,
        project_path: str,
        *,
        engine_name: str = DEFAULT_ENGINE_NAME,
        engine_kwargs: Optional[Dict[str, object]] = None,
        max_array_length: int = DEFAULT_MAX_ARRAY_LENGTH,
    ) -> None:
        self.project_path = project_path
        self.engine_name = engine_name
        self.engine_kwargs = engine_kwargs or {}
        self.max_array_length = max_array_length
        self._engine: Optional[AnalysisEngine] = None
        self._model: Optional[ClassModel] = None

    def _ensure_engine(self) -> AnalysisEngine:
        if self._engine is None:
            try:
                registration = resolve_engine(self.engine_name)
            except KeyError as exc:
                raise StorageError(f"Engine {self.engine_name} is not registered") from exc
            try:
                self._engine = registration.factory(self.project_path, **self.engine_kwargs)
            except TypeError as exc:
                raise StorageError(
                    f"Engine {self.engine_name} does not accept provided parameters: {exc}"
                ) from exc
        return self._engine

    def _ensure_model(self) -> ClassModel:
        if self._model is None:
            engine = self._ensure_engine()
            try:
                self._model = engine.ensure_loaded()
            except EngineError as exc:
                raise StorageError(str(exc)) from exc
        return self._model

    def list_contracts(self) -> List[str]:
        """Return the names of classes that can hold storage."""
        model = self._ensure_model()
        return [
            entry.name
            for entry in model.iter_classes()
            if entry.stereotype.is_contract_like and entry.stereotype is not ClassStereotype.INTERFACE
        ]

    def get_storage_sections(self, contract: str, filename: Optional[str] = None) -> List[StorageSection]:
        """Build the storage sections of a contract."""
        model = self._ensure_model()
        try:
            return build_layout(contract, model, filename)
        except StorageLayoutError as exc:
            raise StorageError(str(exc)) from exc

    async def add_values(
        self,
        sections: List[StorageSection],
        client: SlotValueClient,
        contract_address: str,
        block_tag: BlockTag = "latest",
    ) -> List[StorageSection]:
        """Fetch slot values from the root section down, expanding dynamic data."""
        if not sections:
            return sections
        ids = IdAllocator.after(sections)
        try:
            await self.expand_dynamic(sections[0], sections, client, contract_address, ids, block_tag)
        except SlotValueError as exc:
            raise StorageError(str(exc)) from exc
        self.decode_values(sections)
        return sections

    async def expand_dynamic(
        self,
        section: StorageSection,
        sections: List[StorageSection],
        client: SlotValueClient,
        contract_address: str,
        ids: IdAllocator,
        block_tag: BlockTag = "latest",
    ) -> None:
        """Fetch a section's values then expand what they point at.

        Dynamic arrays get a variable per element, long strings and bytes get
        a section of chunks. Nested sections are handled one at a time since
        each needs the values of its parent first.
        """
        await add_slot_values(client, contract_address, section, block_tag)

        for variable in list(section.variables):
            if self._is_dynamic_bytes(variable):
                await self._expand_bytes(variable, section, sections, client, contract_address, ids, block_tag)
                continue

            reference = find_section(sections, variable.reference_section_id)
            if reference is None or reference.under_mapping:
                continue

            if variable.kind is AttributeKind.ARRAY and variable.is_dynamic:
                if variable.raw_slot_value is None:
                    continue
                length = int(variable.raw_slot_value, 16)
                reference.array_length = length
                if length == 0:
                    for element in reference.variables:
                        element.should_fetch_value = False
                        element.should_display_value = False
                    continue
                if length > self.max_array_length:
                    logger.warning(
                        "Only showing the first %d of %d elements of %s",
                        self.max_array_length,
                        length,
                        reference.name,
                    )
                    length = self.max_array_length
                add_array_elements(reference, length, ids)

            await self.expand_dynamic(reference, sections, client, contract_address, ids, block_tag)

    @staticmethod
    def _is_dynamic_bytes(variable: Variable) -> bool:
        return (
            variable.kind is AttributeKind.ELEMENTARY
            and variable.is_dynamic
            and normalize_type(variable.type_string) in ("string", "bytes")
            and variable.raw_slot_value is not None
            and variable.reference_section_id is None
        )

    async def _expand_bytes(
        self,
        variable: Variable,
        section: StorageSection,
        sections: List[StorageSection],
        client: SlotValueClient,
        contract_address: str,
        ids: IdAllocator,
        block_tag: BlockTag,
    ) -> None:
        byte_length = dynamic_slot_size(variable.raw_slot_value)
        if byte_length == 0:
            return
        slot_count = -(-byte_length // SLOT_SIZE)
        if slot_count > self.max_array_length:
            logger.warning(
                "Only showing the first %d of %d slots of %s",
                self.max_array_length,
                slot_count,
                variable.name,
            )
        chunks = build_dynamic_bytes_section(
            variable, section.slot_key(variable.from_slot), byte_length, ids, max_slots=self.max_array_length
        )
        variable.reference_section_id = chunks.id
        sections.append(chunks)
        logger.debug("Reading %d bytes of %s from %d slots", byte_length, variable.name, len(chunks.variables))
        await add_slot_values(client, contract_address, chunks, block_tag)

    def decode_values(self, sections: List[StorageSection]) -> None:
        """Fill in decoded values for every variable with a slot value."""
        for section in sections:
            for variable in section.variables:
                if not variable.should_display_value:
                    continue
                reference = find_section(sections, variable.reference_section_id)
                if reference is not None and reference.kind in (StorageSectionKind.STRING, StorageSectionKind.BYTES):
                    variable.decoded_value = decode_dynamic_value(variable, reference)
                else:
                    variable.decoded_value = decode_variable(variable)

    def get_storage(
        self,
        contract: str,
        filename: Optional[str] = None,
        *,
        url: Optional[str] = None,
        contract_address: Optional[str] = None,
        block_tag: BlockTag = "latest",
        client: Optional[SlotValueClient] = None,
    ) -> Dict[str, object]:
        """Return storage sections, with values when an address is given, as a dictionary."""
        sections = self.get_storage_sections(contract, filename)
        if contract_address:
            if client is None:
                if not url:
                    raise StorageError("A node url is required to read storage values")
                client = SlotValueClient(url)
            asyncio.run(self.add_values(sections, client, contract_address, block_tag))
        return {
            "contract": contract,
            "address": contract_address,
            "block": block_tag if contract_address else None,
            "sections": [section.as_dict() for section in sections],
        }


def create_service(
    project_path: str,
    *,
    engine_name: str = DEFAULT_ENGINE_NAME,
    engine_kwargs: Optional[Dict[str, object]] = None,
    max_array_length: int = DEFAULT_MAX_ARRAY_LENGTH,
) -> StorageService:
    """Helper to instantiate a StorageService."""
    return StorageService(
        project_path,
        engine_name=engine_name,
        engine_kwargs=engine_kwargs,
        max_array_length=max_array_length,
    )
