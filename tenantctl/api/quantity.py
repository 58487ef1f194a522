"""Kubernetes resource quantity parsing.

Supports the canonical quantity forms accepted by the API server:
plain numbers (``10``, ``0.5``), decimal SI suffixes (``500m``, ``2k``,
``1G``), binary suffixes (``20Gi``, ``512Mi``) and decimal exponents
(``1e3``). Negative quantities are rejected since every quantity this
controller handles is a quota ceiling.
"""

import re
from decimal import Decimal, InvalidOperation

_QUANTITY_RE = re.compile(
    r"^(?P<number>\d+(?:\.\d*)?|\.\d+)"
    r"(?P<suffix>[KMGTPE]i|[numkMGTPE]|[eE][+-]?\d+)?$"
)

_BINARY_SUFFIXES: dict[str, int] = {
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}

_DECIMAL_SUFFIXES: dict[str, Decimal] = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}


class QuantityError(ValueError):
    """Raised for strings that are not valid resource quantities."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Invalid resource quantity {value!r}")


def _split(value: str) -> tuple[Decimal, str]:
    match = _QUANTITY_RE.match(value.strip())
    if match is None:
        raise QuantityError(value)
    try:
        number = Decimal(match.group("number"))
    except InvalidOperation as e:
        raise QuantityError(value) from e
    return number, match.group("suffix") or ""


def parse_quantity(value: str | int | float) -> Decimal:
    """Parse a resource quantity into its value in base units.

    Examples:
        >>> parse_quantity("500m")
        Decimal('0.500')
        >>> parse_quantity("1Ki")
        Decimal('1024')
    """
    if isinstance(value, bool):
        raise QuantityError(value)
    if isinstance(value, int | float):
        value = str(value)
    if not isinstance(value, str):
        raise QuantityError(value)

    number, suffix = _split(value)
    if suffix in _BINARY_SUFFIXES:
        return number * _BINARY_SUFFIXES[suffix]
    if suffix in _DECIMAL_SUFFIXES:
        return number * _DECIMAL_SUFFIXES[suffix]
    # Decimal exponent, e.g. 1e3
    return number * (Decimal(10) ** int(suffix[1:]))


def normalize_quantity(value: str | int | float) -> str:
    """Validate a quantity and return it as a trimmed string.

    Numeric YAML values (``cpu: 4``) are accepted and rendered as strings.
    """
    parse_quantity(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def compare_quantities(left: str, right: str) -> int:
    """Return -1, 0 or 1 as ``left`` is less than, equal to or above ``right``."""
    a, b = parse_quantity(left), parse_quantity(right)
    return (a > b) - (a < b)
