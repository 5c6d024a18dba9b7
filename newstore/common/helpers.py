import logging
import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from newstore.exceptions.core_exceptions import InvalidInput

logger = logging.getLogger(__name__)

NUMBER_SEPARATORS = re.compile(r"[\s,;]+")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_numbers(values: Iterable, total_numbers: int = 100) -> list[int]:
    """Deduplicate, drop out of range values and sort.

    Non integer values are dropped as well. The result may be empty.
    """
    result = set()
    for value in values:
        try:
            n = int(value)
        except (TypeError, ValueError):
            continue
        if isinstance(value, float) and value != n:
            continue
        if 0 <= n < total_numbers:
            result.add(n)
    return sorted(result)


def parse_numbers(raw, total_numbers: int = 100, limit: int | None = None) -> list[int]:
    """Accept a list of ints or a comma/space separated string of numbers."""
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = [p for p in NUMBER_SEPARATORS.split(raw.strip()) if p]
    elif isinstance(raw, (list, tuple, set)):
        parts = list(raw)
    else:
        raise InvalidInput("Numbers must be a list or a comma separated string.")

    # cap applies in input order, before sorting
    seen: list[int] = []
    for part in parts:
        accepted = normalize_numbers([part], total_numbers)
        if accepted and accepted[0] not in seen:
            seen.append(accepted[0])
    if limit is not None:
        seen = seen[:limit]
    return sorted(seen)


def format_number_label(n: int) -> str:
    return f"{n:02d}"


def format_numbers_description(numbers: Iterable[int]) -> str:
    labels = ", ".join(format_number_label(n) for n in sorted(numbers))
    return f"Sorteio New Store - números {labels}"


def cents_to_amount(cents: int) -> Decimal:
    """Minor units to a two decimal major unit amount."""
    return (Decimal(cents) / Decimal(100)).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )


def digits_only(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def strip_whitespace(value: str | None) -> str | None:
    if value is None:
        return None
    return re.sub(r"\s+", "", value)
