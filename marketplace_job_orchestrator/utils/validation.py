"""
Command-boundary validation for identifiers and amounts.

Malformed identifiers are rejected before any entity is loaded so that no
aggregate is ever persisted with an inconsistent reference.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..core.exceptions import ValidationError

CUSTOMER_ID_PREFIX = "CUSTOMER-"
MECHANIC_ID_PREFIX = "MECHANIC-"

MAX_ID_LENGTH = 128

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:@\-]*$")


def validate_id(field: str, value: Any, prefix: Optional[str] = None) -> str:
    """
    Validate an identifier supplied by a caller.

    Args:
        field: Field name used in the error message
        value: Identifier to validate
        prefix: Required prefix, or None to accept any well-formed identifier

    Returns:
        The identifier unchanged

    Raises:
        ValidationError: If the identifier is missing or malformed
    """
    if not isinstance(value, str) or not value:
        raise ValidationError(field, "identifier is required", value)

    if len(value) > MAX_ID_LENGTH:
        raise ValidationError(field, f"identifier longer than {MAX_ID_LENGTH} characters", value)

    if not _ID_PATTERN.match(value):
        raise ValidationError(field, "identifier contains invalid characters", value)

    if prefix and not value.startswith(prefix):
        raise ValidationError(field, f"identifier must start with '{prefix}'", value)

    return value


def validate_amount(field: str, value: Any, allow_zero: bool = False) -> Decimal:
    """Parse a monetary amount into a non-negative Decimal."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(field, "amount is required", value)

    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(field, "amount is not a number", value)

    if not amount.is_finite():
        raise ValidationError(field, "amount must be finite", value)

    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(field, "amount must be positive", value)

    return amount


def require_text(field: str, value: Any) -> str:
    """Require a non-blank string."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "value is required", value)
    return value.strip()
