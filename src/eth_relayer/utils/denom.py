"""Parsing of ether-denominated amounts used in fee configuration."""

from web3 import Web3

# "gwei" must be tested before "wei" since it also ends with "wei".
_UNITS = (
    ("ether", "ether"),
    ("gwei", "gwei"),
    ("wei", "wei"),
)


def parse_ether_amount(amount: str) -> int:
    """
    Parse an amount such as ``"3gwei"``, ``"1ether"`` or ``"10wei"`` into wei.

    Args:
        amount: Integer quantity followed by a unit suffix

    Returns:
        The amount in wei

    Raises:
        ValueError: If the unit is missing or the quantity is not an integer
    """
    for suffix, unit in _UNITS:
        if amount.endswith(suffix):
            quantity = amount[: -len(suffix)]
            break
    else:
        raise ValueError(f"amount({amount}) has invalid unit (acceptable: wei/gwei/ether)")

    if not quantity.isdigit():
        raise ValueError(f"amount({amount}) has invalid quantity")

    return int(Web3.to_wei(int(quantity), unit))
