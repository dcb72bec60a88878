"""Helpers for the forward-slash delimited keys used by every filesystem.

    Keys never start with a separator. A key ending in the separator is a prefix
    (i.e. a directory-like segment); anything else names an object.
"""

SEPARATOR = "/"


def normalize(path: str) -> str:
    """Convert backslashes, collapse repeated separators and strip the leading separator."""
    if not path:
        return ""
    path = path.replace("\\", SEPARATOR)
    trailing = path.endswith(SEPARATOR)
    pieces = [x for x in path.split(SEPARATOR) if x != ""]
    if not pieces:
        return ""
    return SEPARATOR.join(pieces) + (SEPARATOR if trailing else "")


def split_prefix(path: str) -> tuple[str, str]:
    """Split on the first separator, e.g. 'a/b/c' -> ('a', 'b/c') and 'a' -> ('a', '')."""
    if SEPARATOR not in path:
        return path, ""
    prefix, remainder = path.split(SEPARATOR, 1)
    return prefix, remainder


def ensure_trailing_separator(path: str) -> str:
    """Append the separator so 'foo' and 'foobar' are never conflated in a prefix query."""
    if path == "" or path.endswith(SEPARATOR):
        return path
    return path + SEPARATOR


def strip_trailing_separator(path: str) -> str:
    return path.rstrip(SEPARATOR)


def join(*parts: str) -> str:
    """Join key segments with exactly one separator between them."""
    pieces = [p.strip(SEPARATOR) for p in parts if p and p.strip(SEPARATOR)]
    joined = SEPARATOR.join(pieces)
    if parts and parts[-1] and parts[-1].endswith(SEPARATOR) and joined:
        joined += SEPARATOR
    return joined


def parent(path: str) -> str:
    """Get the parent prefix of the key ('' for top-level keys)."""
    path = strip_trailing_separator(path)
    if SEPARATOR not in path:
        return ""
    return path[:path.rfind(SEPARATOR) + 1]


def name(path: str) -> str:
    path = strip_trailing_separator(path)
    return path[path.rfind(SEPARATOR) + 1:]


def substitute_prefix(key: str, old_prefix: str, new_prefix: str) -> str:
    """Replace the leading old_prefix of key with new_prefix."""
    return new_prefix + key[len(old_prefix):]


def rename_target(new_name: str) -> str:
    """Turn the target of a directory rename into a prefix; '' and '.' mean the container root."""
    if new_name in ("", "."):
        return ""
    return ensure_trailing_separator(new_name)
