"""
Encoding of decoded YAML/JSON values into CloudFormation string values.
"""

from decimal import Decimal
from typing import Any

from .errors import InvalidValue, UnsupportedType


def format_number(value: Any) -> str:
    """Format an int or float as its shortest exact decimal form.

    No trailing zeros and no exponent notation: ``3.0`` -> ``"3"``,
    ``1e16`` -> ``"10000000000000000"``.
    """
    if isinstance(value, int):
        return str(value)
    # repr() gives the shortest string that round-trips the float
    decimal = Decimal(repr(value)).normalize()
    return format(decimal, "f")


def value_to_string(value: Any, allow_slices: bool = False, allow_commas: bool = False) -> str:
    """
    Convert a decoded value into the flat string CloudFormation expects.

    Args:
        value: String, number, boolean, or (when allow_slices) a list of those
        allow_slices: Accept a list and join its items with commas
        allow_commas: Accept commas inside a plain string value

    Returns:
        The encoded string

    Raises:
        InvalidValue: A string holds a comma where commas are not allowed
        UnsupportedType: The value is a map, None, a nested list, etc.
    """
    if isinstance(value, list):
        if not allow_slices:
            raise UnsupportedType("Field of type list is not allowed")
        # Commas separate list items, so they can never appear inside one
        return ",".join(value_to_string(item, False, False) for item in value)

    if isinstance(value, str):
        if not allow_commas and "," in value:
            raise InvalidValue("Commas not allowed in list values")
        return value

    # bool first: it is a subclass of int
    if isinstance(value, bool):
        return "true" if value else "false"

    if isinstance(value, (int, float)):
        if isinstance(value, float) and (value != value or value in (float("inf"), float("-inf"))):
            raise InvalidValue(f"Number {value} cannot be represented")
        return format_number(value)

    raise UnsupportedType(f"Field of type {type(value).__name__} is not allowed")
