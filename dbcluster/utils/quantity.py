"""
Kubernetes resource quantity parsing.

Storage sizes are compared numerically ("1Gi" > "900Mi"), never as strings.
"""
import re
from decimal import Decimal, InvalidOperation

_BINARY_SUFFIXES = {
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}

_DECIMAL_SUFFIXES = {
    "n": Decimal(10) ** -9,
    "u": Decimal(10) ** -6,
    "m": Decimal(10) ** -3,
    "": Decimal(1),
    "k": Decimal(10) ** 3,
    "M": Decimal(10) ** 6,
    "G": Decimal(10) ** 9,
    "T": Decimal(10) ** 12,
    "P": Decimal(10) ** 15,
    "E": Decimal(10) ** 18,
}

_QUANTITY_RE = re.compile(r"^([+-]?[0-9.]+(?:[eE][+-]?[0-9]+)?)([a-zA-Z]*)$")


def parse_quantity(quantity: str) -> Decimal:
    """
    Parse a Kubernetes quantity string into a Decimal number of base units.

    Examples:
        >>> parse_quantity("300Mi")
        Decimal('314572800')
        >>> parse_quantity("1G")
        Decimal('1000000000')

    Raises:
        ValueError: If the quantity is malformed
    """
    if quantity is None:
        raise ValueError("Quantity must not be empty")
    match = _QUANTITY_RE.match(str(quantity).strip())
    if not match:
        raise ValueError(f"Invalid quantity: {quantity!r}")

    number, suffix = match.groups()
    try:
        value = Decimal(number)
    except InvalidOperation as e:
        raise ValueError(f"Invalid quantity: {quantity!r}") from e

    if suffix in _BINARY_SUFFIXES:
        return value * _BINARY_SUFFIXES[suffix]
    if suffix in _DECIMAL_SUFFIXES:
        return value * _DECIMAL_SUFFIXES[suffix]
    raise ValueError(f"Invalid quantity suffix {suffix!r} in {quantity!r}")


def compare_quantities(a: str, b: str) -> int:
    """Return -1, 0 or 1 as quantity a is smaller, equal or larger than b."""
    qa, qb = parse_quantity(a), parse_quantity(b)
    if qa < qb:
        return -1
    if qa > qb:
        return 1
    return 0
