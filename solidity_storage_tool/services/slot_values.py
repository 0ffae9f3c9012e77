"""Read contract storage slots from a JSON-RPC node."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

import aiohttp

from ..core.models import StorageSection

logger = logging.getLogger(__name__)

BlockTag = Union[str, int]

DEFAULT_TIMEOUT_SECONDS = 30


class SlotValueError(RuntimeError):
    """Storage values could not be read from the node."""


class JsonRpcTransport(Protocol):
    async def post(self, url: str, payload: Any) -> Any:
        ...


class AiohttpTransport:
    """POST JSON-RPC payloads with aiohttp."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def post(self, url: str, payload: Any) -> Any:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(url, json=payload) as response:
                response.raise_for_status()
                return await response.json(content_type=None)


class SlotValueCache:
    """Slot values already read in one session, keyed by slot."""

    def __init__(self) -> None:
        self._values: Dict[int, str] = {}

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, slot_key: int) -> bool:
        return slot_key in self._values

    def add(self, slot_keys: Sequence[int], values: Sequence[str]) -> None:
        for slot_key, value in zip(slot_keys, values):
            self._values[slot_key] = value

    def read(self, slot_keys: Sequence[int]) -> Tuple[Dict[int, str], List[int]]:
        """Split `slot_keys` into cached values and the unique keys still to fetch."""
        cached = {key: self._values[key] for key in slot_keys if key in self._values}
        missing = [key for key in dict.fromkeys(slot_keys) if key not in self._values]
        return cached, missing

    def clear(self) -> None:
        self._values.clear()


def normalize_slot_value(value: str) -> str:
    """`0x` followed by 64 lower case hex digits."""
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise ValueError(f"Slot value {value!r} is not a hex string")
    digits = value[2:].lower()
    if len(digits) > 64:
        raise ValueError(f"Slot value {value} is longer than 32 bytes")
    int(digits or "0", 16)
    return "0x" + digits.rjust(64, "0")


def format_block_tag(block_tag: BlockTag) -> str:
    if isinstance(block_tag, int):
        return hex(block_tag)
    return block_tag


class SlotValueClient:
    """Batch `eth_getStorageAt` client with a per session cache."""

    def __init__(
        self,
        url: str,
        transport: Optional[JsonRpcTransport] = None,
        cache: Optional[SlotValueCache] = None,
    ) -> None:
        self.url = url
        self.transport = transport or AiohttpTransport()
        self.cache = cache if cache is not None else SlotValueCache()
        self._ids = itertools.count(1)
        self._scope: Optional[Tuple[str, str]] = None

    async def fetch(
        self,
        contract_address: str,
        slot_keys: Sequence[int],
        block_tag: BlockTag = "latest",
    ) -> List[str]:
        """Values of `slot_keys` in the requested order."""
        if not slot_keys:
            return []
        scope = (contract_address.lower(), format_block_tag(block_tag))
        if self._scope is not None and scope != self._scope:
            # cached slots belong to another contract or block
            self.cache.clear()
        self._scope = scope
        values, missing = self.cache.read(slot_keys)
        logger.debug("%d of %d slots cached, cache holds %d", len(values), len(slot_keys), len(self.cache))

        if missing:
            fetched = await self._request(contract_address, missing, block_tag)
            self.cache.add(missing, fetched)
            values.update(zip(missing, fetched))
        return [values[key] for key in slot_keys]

    async def _request(
        self,
        contract_address: str,
        slot_keys: List[int],
        block_tag: BlockTag,
    ) -> List[str]:
        tag = format_block_tag(block_tag)
        payload = [
            {
                "id": next(self._ids),
                "jsonrpc": "2.0",
                "method": "eth_getStorageAt",
                "params": [contract_address, hex(slot_key), tag],
            }
            for slot_key in slot_keys
        ]
        logger.debug(
            "Requesting %d storage values for contract %s at block %s from %s",
            len(slot_keys),
            contract_address,
            tag,
            self.url,
        )

        failure = (
            f"Failed to get {len(slot_keys)} storage values for contract {contract_address} from {self.url}"
        )
        try:
            response = await self.transport.post(self.url, payload)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise SlotValueError(failure) from exc

        if isinstance(response, dict) and "error" in response:
            raise SlotValueError(f"{failure}: {response['error']}")
        if not isinstance(response, list) or len(response) != len(slot_keys):
            raise SlotValueError(f"{failure}: expected a batch of {len(slot_keys)} responses")

        try:
            ordered = sorted(response, key=lambda item: int(item["id"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise SlotValueError(f"{failure}: response without a valid id") from exc

        values = []
        for item in ordered:
            if item.get("error") is not None:
                raise SlotValueError(f"{failure}: {item['error']}")
            try:
                values.append(normalize_slot_value(item.get("result")))
            except ValueError as exc:
                raise SlotValueError(f"{failure}: {exc}") from exc
        return values


def section_slot_keys(section: StorageSection) -> List[int]:
    """Unique slot keys of the variables in `section` that still need a value."""
    keys: List[int] = []
    for variable in section.variables:
        if not variable.should_fetch_value or variable.raw_slot_value is not None:
            continue
        for slot in range(variable.from_slot, variable.to_slot + 1):
            keys.append(section.slot_key(slot))
    return list(dict.fromkeys(keys))


def distribute_values(section: StorageSection, slot_keys: Iterable[int], values: Iterable[str]) -> None:
    """Copy slot values onto the variables that start in those slots.

    Variables are in from_slot order so the scan stops at the first
    variable past the slot.
    """
    for slot_key, value in zip(slot_keys, values):
        slot = slot_key - (section.offset or 0)
        for variable in section.variables:
            if variable.from_slot > slot:
                break
            if (
                variable.from_slot == slot
                and variable.should_fetch_value
                and variable.raw_slot_value is None
            ):
                variable.raw_slot_value = value


async def add_slot_values(
    client: SlotValueClient,
    contract_address: str,
    section: StorageSection,
    block_tag: BlockTag = "latest",
) -> None:
    """Fill in the raw slot values of a section's fetchable variables."""
    if section.under_mapping:
        return
    slot_keys = section_slot_keys(section)
    if not slot_keys:
        return
    section.address = contract_address
    values = await client.fetch(contract_address, slot_keys, block_tag)
    distribute_values(section, slot_keys, values)
