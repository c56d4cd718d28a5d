"""
keys.py - Derived fields and range helpers for object keys.

Every column derived from a key (parent_prefix, basename, extension,
depth, is_folder) is computed here and nowhere else, so the stored
values are always a pure function of the key.
"""

import ipaddress
import string
import unicodedata
from dataclasses import dataclass

from bucket_index.errors import ValidationError

DELIMITER = "/"
MAX_KEY_LENGTH = 1024

_BUCKET_CHARS = frozenset(string.ascii_lowercase + string.digits + ".-")
_BUCKET_EDGE_CHARS = frozenset(string.ascii_lowercase + string.digits)


@dataclass(frozen=True, slots=True)
class KeyParts:
    """Columns derived from an object key."""
    parent_prefix: str
    basename: str
    extension: str | None
    depth: int
    is_folder: bool


def split_key(key: str) -> KeyParts:
    """
    Derive the hierarchical columns of a key.

    >>> split_key("photos/2024/IMG_01.JPG")
    KeyParts(parent_prefix='photos/2024/', basename='IMG_01.JPG', extension='jpg', depth=2, is_folder=False)
    >>> split_key("photos/")
    KeyParts(parent_prefix='', basename='photos', extension=None, depth=0, is_folder=True)

    Raises:
        ValidationError: If the key is empty
    """
    if not key:
        raise ValidationError("Object key must not be empty", field="key", value=key)

    is_folder = key.endswith(DELIMITER)
    trimmed = key[:-1] if is_folder else key
    cut = trimmed.rfind(DELIMITER)
    if cut >= 0:
        parent_prefix = trimmed[: cut + 1]
        basename = trimmed[cut + 1 :]
    else:
        parent_prefix = ""
        basename = trimmed

    extension = None
    if not is_folder:
        dot = basename.rfind(".")
        # ".bashrc" and "archive." carry no extension
        if 0 < dot < len(basename) - 1:
            extension = basename[dot + 1 :].lower()

    return KeyParts(
        parent_prefix=parent_prefix,
        basename=basename,
        extension=extension,
        depth=parent_prefix.count(DELIMITER),
        is_folder=is_folder,
    )


def ancestors(prefix: str) -> list[str]:
    """
    All folder prefixes above ``prefix``, nearest first, ending with root.

    >>> ancestors("a/b/c/")
    ['a/b/', 'a/', '']
    """
    result = []
    current = prefix.rstrip(DELIMITER)
    while current:
        cut = current.rfind(DELIMITER)
        current = current[:cut] if cut >= 0 else ""
        result.append(current + DELIMITER if current else "")
    return result


def parent_of(prefix: str) -> str:
    """Parent folder of a prefix; root's parent is root."""
    chain = ancestors(prefix)
    return chain[0] if chain else ""


def prefix_range(prefix: str) -> tuple[str, str | None]:
    """
    Half-open string range [lo, hi) covering every string starting with prefix.

    Used instead of LIKE, which is case-insensitive in SQLite and needs
    escaping for '%' and '_'. ``hi`` is None for the empty prefix.
    """
    if not prefix:
        return "", None
    last = prefix[-1]
    return prefix, prefix[:-1] + chr(ord(last) + 1)


def range_clause(column: str, prefix: str) -> tuple[str, tuple[str, ...]]:
    """SQL fragment and parameters restricting ``column`` to a prefix range."""
    lo, hi = prefix_range(prefix)
    if hi is None:
        return "1 = 1", ()
    return f"{column} >= ? AND {column} < ?", (lo, hi)


def next_segment(key: str, prefix: str) -> tuple[str, bool]:
    """
    The path segment of ``key`` directly below ``prefix``.

    Returns (segment, is_folder) where a folder segment keeps its
    trailing delimiter.
    """
    rest = key[len(prefix):]
    cut = rest.find(DELIMITER)
    if cut < 0:
        return rest, False
    return rest[: cut + 1], True


def normalize_prefix(prefix: str | None) -> str:
    """Empty string for root, otherwise the prefix unchanged."""
    return prefix or ""


def validate_bucket_name(name: str) -> None:
    """
    Check a bucket name against the S3 naming rules.

    Raises:
        ValidationError: On the first rule the name breaks
    """

    def invalid(message: str) -> ValidationError:
        return ValidationError(message, field="bucket_name", value=name)

    if not name:
        raise invalid("Bucket name cannot be empty")
    if not 3 <= len(name) <= 63:
        raise invalid("Bucket name must be between 3 and 63 characters long")
    try:
        ipaddress.IPv4Address(name)
    except ValueError:
        pass
    else:
        raise invalid("Bucket name cannot be formatted as an IP address")
    if not set(name) <= _BUCKET_CHARS:
        raise invalid(
            "Bucket name can only contain lowercase letters, numbers, dots, and hyphens"
        )
    if name[0] not in _BUCKET_EDGE_CHARS or name[-1] not in _BUCKET_EDGE_CHARS:
        raise invalid("Bucket name must start and end with a letter or number")
    if ".." in name:
        raise invalid("Bucket name cannot contain consecutive periods")
    if ".-" in name or "-." in name:
        raise invalid("Bucket name cannot contain periods adjacent to hyphens")


def validate_key(key: str, field: str = "key") -> None:
    """
    Check an object key or prefix: non-empty, at most 1024 characters,
    no control characters.

    Raises:
        ValidationError: If the key breaks a rule
    """
    if not key:
        raise ValidationError("Object key cannot be empty", field=field, value=key)
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Object key must be no more than {MAX_KEY_LENGTH} characters long",
            field=field,
            value=key[:64],
        )
    if any(unicodedata.category(c) == "Cc" for c in key):
        raise ValidationError(
            "Object key contains invalid control characters", field=field, value=key
        )
