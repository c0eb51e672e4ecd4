"""
Container path helpers.

Turns raw location values from the import file into distinguished names and
answers structural questions about DNs (parent, depth, containment). All
functions are pure and perform no directory I/O.
"""

import re
from typing import List

_SEGMENT_SEPARATORS = re.compile(r'[/\\]')
_HIERARCHY_PREFIXES = ('OU=', 'DC=')
_OU_PREFIX = re.compile(r'^OU\s*=\s*', re.IGNORECASE)


def split_dn(dn: str) -> List[str]:
    """Split a DN into its RDN components, honouring backslash-escaped commas."""
    parts = []
    current = []
    escaped = False
    for char in dn or '':
        if escaped:
            current.append(char)
            escaped = False
        elif char == '\\':
            current.append(char)
            escaped = True
        elif char == ',':
            parts.append(''.join(current).strip())
            current = []
        else:
            current.append(char)
    tail = ''.join(current).strip()
    if tail:
        parts.append(tail)
    return [part for part in parts if part]


def _is_fully_qualified(value: str) -> bool:
    upper = value.upper()
    return 'DC=' in upper or ('OU=' in upper and ',' in value)


def build_container_path(raw_value: str, default_root: str) -> str:
    """
    Build the target container DN for a raw location value.

    Args:
        raw_value: Value from the location column, either a DN or a
            slash separated path such as ``Students/6A``
        default_root: DN appended to relative paths and returned for empty input

    Returns:
        Canonical container DN
    """
    value = (raw_value or '').strip()
    if not value:
        return default_root

    if _is_fully_qualified(value):
        components = [part for part in split_dn(value)
                      if part.upper().startswith(_HIERARCHY_PREFIXES)]
        return ','.join(components) if components else default_root

    segments = [_OU_PREFIX.sub('', segment.strip()).strip() for segment in _SEGMENT_SEPARATORS.split(value)]
    segments = [segment for segment in segments if segment]
    if not segments:
        return default_root

    components = [f"OU={segment}" for segment in reversed(segments)]
    if default_root:
        components.append(default_root)
    return ','.join(components)


def container_name(dn: str) -> str:
    """Value of the first RDN, e.g. ``6A`` for ``OU=6A,OU=Students,DC=x``."""
    parts = split_dn(dn)
    if not parts:
        return ''
    _, _, value = parts[0].partition('=')
    return value.strip()


def parent_path(dn: str) -> str:
    parts = split_dn(dn)
    return ','.join(parts[1:])


def path_depth(dn: str) -> int:
    return len(split_dn(dn))


def normalize_dn(dn: str) -> str:
    """Case-folded comparison form of a DN with whitespace around RDNs removed."""
    return ','.join(split_dn(dn)).casefold()


def same_path(left: str, right: str) -> bool:
    return normalize_dn(left) == normalize_dn(right)


def is_within(dn: str, root: str) -> bool:
    """True when ``dn`` equals ``root`` or is located below it."""
    if not root:
        return False
    child = split_dn(normalize_dn(dn))
    parent = split_dn(normalize_dn(root))
    return len(child) >= len(parent) and child[len(child) - len(parent):] == parent


def ancestors_within(dn: str, root: str) -> List[str]:
    """
    Containers from ``dn`` up to, but excluding, ``root``.

    Returns the DN itself first followed by its parents, deepest first. Empty
    when ``dn`` is not strictly below ``root``.
    """
    if not is_within(dn, root) or same_path(dn, root):
        return []
    result = []
    current = ','.join(split_dn(dn))
    while current and not same_path(current, root):
        result.append(current)
        current = parent_path(current)
    return result


def missing_levels(dn: str, exists) -> List[str]:
    """
    OU levels of ``dn`` for which ``exists(path)`` is false, root-most first.

    Domain components are never reported; they cannot be created as containers.
    """
    levels = []
    current = ','.join(split_dn(dn))
    while current and split_dn(current)[0].upper().startswith('OU='):
        if exists(current):
            break
        levels.append(current)
        current = parent_path(current)
    return list(reversed(levels))
