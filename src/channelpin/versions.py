"""Version parsing and channel classification.

The unstable channel does not publish upstream versions. It stamps every
build with ``YYYYMMDD.NNN`` (build date plus a sequence index), so its
versions always sort above anything the stable channel publishes. The two
schemes cannot be compared with each other, only told apart.
"""

from __future__ import annotations

from collections.abc import Sequence

Version = tuple[int, ...]

# Anything above this looks like a calendar date rather than a major version.
SYNTHETIC_DATE_FLOOR = 20000000


def is_synthetic_version(version: Sequence[int]) -> bool:
    """Return True for channel-stamped ``YYYYMMDD.NNN`` versions.

    This is a shape heuristic. A two-component upstream version whose first
    component exceeds ``SYNTHETIC_DATE_FLOOR`` is misclassified as synthetic.
    """
    return len(version) == 2 and version[0] > SYNTHETIC_DATE_FLOOR


def parse_version(value: str | Sequence[int]) -> Version:
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise ValueError("empty version")
        parts = raw.split(".")
        if any(not p.isdigit() for p in parts):
            raise ValueError(f"Unsupported version format: {value!r}")
        return tuple(int(p) for p in parts)

    items = list(value)
    if not items:
        raise ValueError("empty version")
    # bool is an int subclass; a JSON true/false here is a malformed entry.
    if any(isinstance(p, bool) or not isinstance(p, int) for p in items):
        raise ValueError(f"Unsupported version format: {value!r}")
    return tuple(items)


def format_version(version: Sequence[int]) -> str:
    return ".".join(str(p) for p in version)
