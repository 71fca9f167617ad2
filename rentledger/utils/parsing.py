# rentledger/utils/parsing.py
from __future__ import annotations

from datetime import date, datetime

from rentledger.errors import ValidationError


def parse_amount(val, field: str, *, allow_zero: bool = True, required: bool = True) -> float | None:
    """Coerce a money/quantity value to a float rounded to 2dp."""
    if val is None or (isinstance(val, str) and not val.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if isinstance(val, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        num = float(val)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number") from None
    if num != num or num in (float("inf"), float("-inf")):
        raise ValidationError(f"{field} must be a finite number")
    if num < 0 or (num == 0 and not allow_zero):
        raise ValidationError(f"{field} must be {'>= 0' if allow_zero else '> 0'}")
    return round(num, 2)


def parse_date(val, field: str) -> date:
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    if isinstance(val, str) and val.strip():
        try:
            return datetime.strptime(val.strip(), "%Y-%m-%d").date()
        except ValueError:
            raise ValidationError(f"{field} must be a YYYY-MM-DD date") from None
    raise ValidationError(f"{field} is required")


def parse_id(val, field: str) -> int:
    if isinstance(val, bool):
        raise ValidationError(f"{field} must be an integer id")
    try:
        ident = int(val)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer id") from None
    if ident <= 0:
        raise ValidationError(f"{field} must be a positive id")
    return ident


def parse_enum(enum_cls, val, field: str):
    if isinstance(val, enum_cls):
        return val
    try:
        return enum_cls((val or "").strip().lower())
    except (ValueError, AttributeError):
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"{field} must be one of: {allowed}") from None


def clean_text(val, maxlen: int) -> str | None:
    s = (val or "").strip() if isinstance(val, str) else (str(val).strip() if val is not None else "")
    if not s:
        return None
    if len(s) > maxlen:
        raise ValidationError(f"text cannot exceed {maxlen} characters")
    return s
