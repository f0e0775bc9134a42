from collections.abc import Sequence

from locateme.services.exceptions import InvalidQueryError


def parse_device_ids(value: Sequence[str] | str | None) -> set[str]:
    """Accept ``["a", "b"]``, ``"a,b"`` or a mix of both; blanks are ignored."""
    if not value:
        return set()
    items = [value] if isinstance(value, str) else list(value)
    ids = set()
    for item in items:
        for part in str(item).split(","):
            part = part.strip()
            if part:
                ids.add(part)
    return ids


def parse_bounded_int(name: str, value: int | str | None, *, default: int, maximum: int, minimum: int = 1) -> int:
    """
    Parse a positive integer query parameter.

    Raises:
        InvalidQueryError: value is not an integer or falls outside [minimum, maximum]
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise InvalidQueryError(f"{name} must be an integer")
    if isinstance(value, int):
        parsed = value
    else:
        text = str(value).strip()
        if not text.lstrip("-").isdigit():
            raise InvalidQueryError(f"{name} must be an integer, got {value!r}")
        parsed = int(text)
    if parsed < minimum or parsed > maximum:
        raise InvalidQueryError(f"{name} must be between {minimum} and {maximum}")
    return parsed
