import math
import re


IDENTIFIER_PATTERN = re.compile(r"[A-Za-z0-9]+")
MIN_MARK = 0.0
MAX_MARK = 100.0


class MarkError(ValueError):
    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)


def is_valid_identifier(value: str) -> bool:
    # ASCII only; str.isalnum() would also accept other scripts.
    return IDENTIFIER_PATTERN.fullmatch(value) is not None


def is_mark_in_range(value: float) -> bool:
    return MIN_MARK <= value <= MAX_MARK


def parse_mark(text: str) -> float | None:
    """Parse a trimmed mark cell.

    Returns None for an empty cell (an ungraded item). Raises MarkError with
    reason ``mark_not_numeric`` or ``mark_out_of_range`` otherwise.
    """
    text = text.strip()
    if not text:
        return None

    try:
        value = float(text)
    except ValueError:
        raise MarkError("mark_not_numeric", "mark is not a valid number") from None

    if not math.isfinite(value):
        raise MarkError("mark_not_numeric", "mark is not a valid number")
    if not is_mark_in_range(value):
        raise MarkError("mark_out_of_range", f"mark is outside valid range ({MIN_MARK:g}-{MAX_MARK:g})")
    return value
