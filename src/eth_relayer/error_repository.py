"""
Selector-indexed catalog of Solidity errors used to decode revert data.

Revert data starts with the 4-byte selector of the error signature followed
by the ABI-encoded arguments. The repository starts from the two built-in
errors (``Error(string)`` and ``Panic(uint256)``) and is extended with custom
errors found in compiled contract artifacts.
"""

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError, ParseError
from eth_utils.abi import collapse_if_tuple
from web3 import Web3

from .errors import ConfigurationError, RevertDecodingError
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ErrorEntry:
    """A Solidity custom error definition.

    Attributes:
        name: Error name, e.g. ``InsufficientBalance``
        inputs: Ordered ``(name, canonical type)`` pairs of the arguments
    """
    name: str
    inputs: tuple[tuple[str, str], ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(t for _, t in self.inputs)})"

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature)[:4])

    @property
    def types(self) -> list[str]:
        return [t for _, t in self.inputs]

    @classmethod
    def from_abi(cls, item: Mapping[str, Any]) -> "ErrorEntry":
        """Build an entry from an ABI item of ``"type": "error"``."""
        return cls(
            name=item["name"],
            inputs=tuple(
                (arg.get("name", ""), collapse_if_tuple(dict(arg)))
                for arg in item.get("inputs", [])
            ),
        )


ERROR_STRING = ErrorEntry("Error", (("desc", "string"),))
PANIC_UINT256 = ErrorEntry("Panic", (("code", "uint256"),))


def _to_jsonable(value: Any) -> Any:
    match value:
        case bytes() | bytearray():
            return "0x" + bytes(value).hex()
        case tuple() | list():
            return [_to_jsonable(v) for v in value]
        case _:
            return value


class ErrorRepository:
    """Maps 4-byte error selectors to error definitions.

    Immutable once construction finishes; safe for concurrent reads.
    """

    def __init__(self, entries: Iterable[ErrorEntry] = ()):
        self._entries: dict[bytes, ErrorEntry] = {}
        for entry in (ERROR_STRING, PANIC_UINT256, *entries):
            self.add(entry)

    @classmethod
    def from_artifact_dirs(cls, abi_paths: Iterable[str]) -> "ErrorRepository":
        """
        Build a repository from the built-ins plus every custom error
        defined in the JSON artifacts under ``abi_paths``.

        Raises:
            ConfigurationError: If two different errors share a selector
        """
        entries = []
        for path, abi in ContractUtility(tuple(abi_paths)).iter_abis():
            for item in abi:
                if item.get("type") == "error":
                    entries.append(ErrorEntry.from_abi(item))
            logger.debug(f"Loaded error ABIs from {path}")
        repo = cls(entries)
        logger.info(f"Error repository initialized with {len(repo)} error definitions")
        return repo

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, selector: bytes) -> bool:
        return selector in self._entries

    def add(self, entry: ErrorEntry) -> None:
        """
        Index ``entry`` by its selector.

        Re-adding an identical signature is a no-op.

        Raises:
            ConfigurationError: If the selector already maps to a different signature
        """
        selector = entry.selector
        if (existing := self._entries.get(selector)) is not None:
            if existing.signature == entry.signature:
                return
            raise ConfigurationError(
                f"error selector collision: selector=0x{selector.hex()}, "
                f"new={entry.signature}, existing={existing.signature}"
            )
        self._entries[selector] = entry

    def get(self, error_data: bytes) -> ErrorEntry:
        """Look up the error definition for raw revert data."""
        if len(error_data) < 4:
            raise RevertDecodingError(
                f"the size of error data is less than 4 bytes: errorData=0x{bytes(error_data).hex()}"
            )
        selector = bytes(error_data[:4])
        if (entry := self._entries.get(selector)) is None:
            raise RevertDecodingError(f"unknown error selector: 0x{selector.hex()}")
        return entry

    def decode(self, error_data: bytes) -> tuple[ErrorEntry, dict[str, Any]]:
        """Decode revert data into its definition and name-keyed arguments."""
        entry = self.get(error_data)
        try:
            values = decode(entry.types, bytes(error_data[4:]))
        except (DecodingError, ParseError, ValueError) as e:
            raise RevertDecodingError(f"failed to unpack error {entry.signature}: {e}") from e
        args = {
            (name or f"arg{i}"): _to_jsonable(value)
            for i, ((name, _), value) in enumerate(zip(entry.inputs, values))
        }
        return entry, args

    def parse_error(self, error_data: bytes) -> str:
        """
        Render revert data as ``Name{"arg":value,...}``.

        Raises:
            RevertDecodingError: If the selector is unknown or the data is malformed
        """
        entry, args = self.decode(error_data)
        return entry.name + json.dumps(args, separators=(",", ":"), ensure_ascii=False)
