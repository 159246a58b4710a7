"""Input coercion shared by the engines. Everything here raises ValidationError."""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional

from .chain import is_address
from .errors import ValidationError
from .settings import VAULT_LIMITS

_QUANTUM = Decimal(1).scaleb(-VAULT_LIMITS.AMOUNT_DECIMALS)


def parse_decimal(value, field: str = "amount") -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} is required")
    try:
        # float → str first, so 0.1 stays 0.1
        d = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if not d.is_finite():
        raise ValidationError(f"{field} must be finite")
    return d


def parse_amount(value, field: str = "amount") -> Decimal:
    """Positive amount with at most 18 decimal places."""
    d = parse_decimal(value, field)
    if d <= 0:
        raise ValidationError(f"{field} must be greater than 0, got {d}")
    if d.as_tuple().exponent < -VAULT_LIMITS.AMOUNT_DECIMALS:
        raise ValidationError(f"{field} has more than {VAULT_LIMITS.AMOUNT_DECIMALS} decimal places")
    return d


def clamp_precision(value: Decimal) -> Decimal:
    """Round down past 18 decimal places (wei). Values already within precision are untouched."""
    if value.as_tuple().exponent < -VAULT_LIMITS.AMOUNT_DECIMALS:
        return value.quantize(_QUANTUM, rounding=ROUND_DOWN)
    return value


def parse_int(value, field: str, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} is required")
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a whole number, got {value!r}")
    if not d.is_finite() or d != d.to_integral_value():
        raise ValidationError(f"{field} must be a whole number, got {value!r}")
    n = int(d)
    if minimum is not None and n < minimum:
        raise ValidationError(f"{field} must be at least {minimum}, got {n}")
    if maximum is not None and n > maximum:
        raise ValidationError(f"{field} must be at most {maximum}, got {n}")
    return n


def normalize_address(value, field: str = "address") -> str:
    """Validated, lowercased address. Store paths are keyed by this form."""
    if not isinstance(value, str) or not is_address(value.strip()):
        raise ValidationError(f"{field} is not a valid address: {value!r}")
    return value.strip().lower()
