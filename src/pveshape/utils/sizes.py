"""Volume size conversions."""

import re
from typing import Union


KIB_PER_UNIT = {"K": 1, "M": 1024, "G": 1024 ** 2, "T": 1024 ** 3}
SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT]?)$")


def parse_size_kib(size: Union[str, int], default_unit: str = "G") -> int:
    """Convert a platform size string such as ``30G`` or ``512M`` to KiB."""
    match = SIZE_RE.match(str(size).strip().upper())
    if not match:
        raise ValueError(f"Invalid size: {size}")
    number, unit = match.groups()
    return int(float(number) * KIB_PER_UNIT[unit or default_unit])


def kib_to_gb(kib: int) -> int:
    """Whole gigabytes, rounded down."""
    return kib // KIB_PER_UNIT["G"]


def normalize_size(size: Union[str, int]) -> str:
    """Canonical suffixed form: ``8`` and ``8192M`` both become ``8G``."""
    kib = parse_size_kib(size)
    for unit in ("G", "M"):
        if kib % KIB_PER_UNIT[unit] == 0:
            return f"{kib // KIB_PER_UNIT[unit]}{unit}"
    return f"{kib}K"


def allocation_size(size: Union[str, int]) -> str:
    """Size in GiB as expected by ``storage:size`` allocation syntax."""
    gib = parse_size_kib(size) / KIB_PER_UNIT["G"]
    return f"{gib:g}"


def same_size(a: Union[str, int, None], b: Union[str, int, None]) -> bool:
    """Compare two sizes by value rather than spelling."""
    if a is None or b is None:
        return a == b
    try:
        return parse_size_kib(a) == parse_size_kib(b)
    except ValueError:
        return str(a) == str(b)
