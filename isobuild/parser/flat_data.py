"""
Flat Data Codec
===============
Reads and writes the flat ``key=value`` text format used at the engine's
external boundaries (planner input, plan output, published result records).

Format:
    - One ``key=value`` pair per line; the first ``=`` separates key and value.
    - Blank lines and lines starting with ``#`` are ignored.
    - The first occurrence of a key wins.
    - Values wrapped in matching single or double quotes are unquoted.
    - Arrays use ``<name>_count`` plus ``<name>_<i>_<field>`` keys.
    - Multi-line values are escaped on write (``\\n``, ``\\\\``) and
      unescaped on read, so every record stays line-oriented.

Internally the engine works on typed records; this module is only used
where text crosses a process or file boundary.
"""
from typing import Iterable, Mapping


def escape_value(value: str) -> str:
    """Escape backslashes, newlines and carriage returns."""
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def unescape_value(value: str) -> str:
    """Inverse of :func:`escape_value`."""
    out: list[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\" and i + 1 < len(value):
            nxt = value[i + 1]
            if nxt == "n":
                out.append("\n")
                i += 2
                continue
            if nxt == "r":
                out.append("\r")
                i += 2
                continue
            if nxt == "\\":
                out.append("\\")
                i += 2
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_flat(text: str, unescape: bool = False) -> dict[str, str]:
    """
    Parse flat ``key=value`` text into a dict.

    Parameters
    ----------
    text : str
        Raw flat data.
    unescape : bool
        Decode ``\\n`` / ``\\\\`` escapes in values (result records).

    Returns
    -------
    dict[str, str]
        Keys mapped to string values. Lines without ``=`` are ignored.
    """
    data: dict[str, str] = {}
    lines = text.split("\n") if unescape else text.splitlines()
    for raw_line in lines:
        stripped = raw_line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        # Escaped records keep their values byte-exact
        line = raw_line.lstrip() if unescape else stripped
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in data:
            continue
        data[key] = unescape_value(value) if unescape else _unquote(value.strip())
    return data


def get_int(data: Mapping[str, str], key: str, default: int = 0) -> int:
    """Return an integer field, ``default`` when missing or not numeric."""
    raw = data.get(key, "").strip()
    try:
        return int(raw)
    except ValueError:
        return default


def get_array(data: Mapping[str, str], name: str) -> list[dict[str, str]]:
    """
    Collect the ``<name>_<i>_<field>`` entries of an indexed array.

    The array length comes from ``<name>_count``. Each returned dict maps
    field names (without the ``<name>_<i>_`` prefix) to values. Missing
    elements yield empty dicts so positions stay aligned with indices.
    """
    count = get_int(data, f"{name}_count")
    items: list[dict[str, str]] = []
    for i in range(max(0, count)):
        prefix = f"{name}_{i}_"
        items.append({
            key[len(prefix):]: value
            for key, value in data.items()
            if key.startswith(prefix)
        })
    return items


def dump_flat(pairs: Iterable[tuple[str, object]], escape: bool = False) -> str:
    """
    Serialize ``(key, value)`` pairs to flat text (one pair per line).

    ``None`` values are skipped; booleans become ``true``/``false``.
    """
    lines: list[str] = []
    for key, value in pairs:
        if value is None:
            continue
        if isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        lines.append(f"{key}={escape_value(text) if escape else text}")
    return "\n".join(lines) + "\n"


def array_pairs(name: str, items: list[Mapping[str, object]]) -> list[tuple[str, object]]:
    """Expand a list of dicts into ``<name>_count`` + ``<name>_<i>_<field>`` pairs."""
    pairs: list[tuple[str, object]] = [(f"{name}_count", len(items))]
    for i, item in enumerate(items):
        for field, value in item.items():
            pairs.append((f"{name}_{i}_{field}", value))
    return pairs
