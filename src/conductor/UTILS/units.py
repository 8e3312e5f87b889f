"""
Parsing of compose duration strings and memory sizes.
"""
import re
from typing import Optional, Union

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(us|ms|s|m|h)')
_DURATION_SECONDS = {
    'us': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}

_MEMORY_SUFFIXES = {
    'b': 1,
    'k': 1024,
    'kb': 1024,
    'm': 1024 ** 2,
    'mb': 1024 ** 2,
    'g': 1024 ** 3,
    'gb': 1024 ** 3,
    't': 1024 ** 4,
    'tb': 1024 ** 4,
}


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """
    Parse a duration such as "1m30s", "500ms" or a plain number of seconds.

    :param value: The raw value from the specification.
    :return: Seconds as a float, or None when value is None.
    :raises ValueError: If the string is not a valid duration.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def parse_memory(value: Union[str, int, None]) -> Optional[int]:
    """
    Parse a memory string like "512m" or "1g" to bytes.

    :param value: Memory size string or byte count.
    :return: Size in bytes, or None when value is empty.
    :raises ValueError: If the value cannot be parsed.
    """
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid memory size: {value!r}")
    if isinstance(value, int):
        return value

    text = str(value).strip().lower()
    for suffix, multiplier in sorted(_MEMORY_SUFFIXES.items(), key=lambda x: -len(x[0])):
        if text.endswith(suffix):
            number = text[:-len(suffix)]
            break
    else:
        number, multiplier = text, 1

    try:
        amount = float(number)
    except ValueError:
        raise ValueError(f"invalid memory size: {value!r}") from None
    if amount < 0:
        raise ValueError(f"invalid memory size: {value!r}")
    return int(amount * multiplier)
