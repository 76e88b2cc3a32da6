import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"


class ContractUtility:
    """
    Utility for loading contract ABIs from compiled artifact directories.

    Artifacts may be either a bare ABI list or a compiler output object
    holding the ABI under an ``abi`` key (Hardhat, Foundry).
    """

    def __init__(self, abi_paths: tuple[str, ...] | list[str] = ()):
        """
        Initialize the ContractUtility.

        Args:
            abi_paths: Directories searched recursively for ``*.json`` artifacts
        """
        self.abi_paths = [Path(p).expanduser() for p in abi_paths]

    @staticmethod
    def load_abi(path: Path) -> list[dict[str, Any]]:
        """Reads the ABI of a single artifact file"""
        with path.open() as file:
            contract_data = json.load(file)

        match contract_data:
            case list():
                return contract_data
            case {"abi": list() as abi}:
                return abi
            case _:
                raise ValueError(f"No ABI found in artifact {path}")

    @staticmethod
    def get_contract_abi(contract_name: str) -> list[dict[str, Any]]:
        """
        Get the ABI of a contract shipped with the package.

        Args:
            contract_name: Name of the contract, e.g. ``IBCHandler``

        Returns:
            The contract ABI
        """
        contract_path = CONTRACTS_DIR / f"{contract_name}.json"
        if not contract_path.is_file():
            raise FileNotFoundError(f"Contract ABI not found: {contract_path}")
        return ContractUtility.load_abi(contract_path)

    def iter_abis(self) -> Iterator[tuple[Path, list[dict[str, Any]]]]:
        """
        Walk every configured directory and yield ``(path, abi)`` per artifact.

        Files that are not valid JSON artifacts are skipped with a warning.

        Raises:
            FileNotFoundError: If a configured directory does not exist
        """
        for directory in self.abi_paths:
            if not directory.is_dir():
                raise FileNotFoundError(f"ABI directory not found: {directory}")
            for path in sorted(directory.rglob("*.json")):
                try:
                    abi = self.load_abi(path)
                except (ValueError, OSError) as e:
                    logger.warning(f"Skipping artifact {path}: {e}")
                    continue
                yield path, abi
