"""
Duplicate identity resolution for one import batch.

Two people with the same first and last name would map to the same account
identifier. The disambiguator walks the rows in order and, for every row whose
natural key was already seen (or whose identifier is already taken), appends
a numeric suffix to the row's last name column and maps the row again so that
every derived attribute (identifier, display name, mail, UPN) carries the
suffix consistently.

A row whose identifier no suffix can make unique is reported as a failure
instead of being planned under a duplicate key.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional

from ldap_import.mapping import RowMapper, MissingIdentityError, ValidationError, strip_diacritics
from ldap_import.models import AttributeMap

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r'[^0-9a-z]+')
MAX_SUFFIX = 999


class DuplicateIdentityError(ValidationError):
    """Raised for a row whose duplicate identifier cannot be made unique."""

    def __init__(self, index: int, identifier: str, column: str):
        self.index = index
        self.identifier = identifier
        self.column = column
        super().__init__(f"Row {index + 1}: duplicate identifier '{identifier}' cannot be made unique "
                         f"through column '{column}'")


@dataclass
class DisambiguationResult:
    """Rows after suffixing and the final identifier per row index."""
    rows: List[Dict[str, Any]]
    identifiers: Dict[int, str] = field(default_factory=dict)
    renamed: Dict[int, str] = field(default_factory=dict)
    failures: Dict[int, DuplicateIdentityError] = field(default_factory=dict)


def natural_key(row: Dict[str, Any], first_name_column: str, last_name_column: str) -> Optional[str]:
    """
    Natural identity key of a row: normalized first and last name.

    Returns None when both names are blank.
    """
    source = AttributeMap(row)
    parts = []
    for column in (first_name_column, last_name_column):
        value = strip_diacritics(str(source.get(column) or '')).casefold()
        parts.append(_NON_ALNUM.sub('', value))
    if not any(parts):
        return None
    return '|'.join(parts)


class IdentityDisambiguator:
    """
    Resolves identifier collisions inside one batch of import rows.

    Args:
        mapper: Row mapper used to derive identifiers
        first_name_column: Source column holding the first name
        last_name_column: Source column that receives the numeric suffix
        max_length: Maximum identifier length
    """

    def __init__(self, mapper: RowMapper, first_name_column: str, last_name_column: str,
                 max_length: Optional[int] = None):
        self.mapper = mapper
        self.first_name_column = first_name_column
        self.last_name_column = last_name_column
        self.max_length = max_length or mapper.max_identifier_length

    def resolve(self, rows: List[Dict[str, Any]]) -> DisambiguationResult:
        """
        Disambiguate all rows.

        Args:
            rows: Import rows in file order; never modified

        Returns:
            DisambiguationResult with copied rows, identifiers by row index
            and the rows that could not be made unique
        """
        occurrences: Dict[str, int] = {}
        used: set = set()
        result = DisambiguationResult(rows=[])

        for index, original in enumerate(rows):
            row = dict(original)
            key = natural_key(row, self.first_name_column, self.last_name_column)

            identifier = self._identifier(row)
            if not identifier:
                result.rows.append(row)
                continue

            seen = occurrences.get(key, 0) if key else 0
            if key:
                occurrences[key] = seen + 1

            if seen or identifier.casefold() in used:
                resolved = self._suffix(row, max(seen + 1, 2), used)
                if resolved is None:
                    failure = DuplicateIdentityError(index, identifier, self.last_name_column)
                    logger.error(str(failure))
                    result.failures[index] = failure
                    result.rows.append(row)
                    continue
                row, identifier = resolved
                result.renamed[index] = identifier
                logger.info(f"Row {index}: duplicate identity resolved as '{identifier}'")

            used.add(identifier.casefold())
            result.identifiers[index] = identifier
            result.rows.append(row)

        if result.renamed:
            logger.info(f"Resolved {len(result.renamed)} duplicate identities in batch of {len(rows)} rows")
        return result

    def _identifier(self, row: Dict[str, Any]) -> str:
        try:
            return self.mapper.map_row(row)[self.mapper.identifier_attribute]
        except MissingIdentityError:
            return ''

    def _suffix(self, row: Dict[str, Any], counter: int, used: set):
        """
        First numeric suffix, from ``counter`` on, that yields a free identifier.

        Returns a ``(row, identifier)`` tuple, or None when the suffix column
        cannot make the identifier unique.
        """
        column = self._source_column(row)
        base = str(row.get(column) or '').strip()

        for number in range(counter, MAX_SUFFIX + 1):
            found = self._with_suffix(row, column, base, str(number))
            if found is None:
                logger.warning(f"Column '{column}' does not carry a suffix into the identifier")
                return None
            if found[1].casefold() not in used:
                return found
        return None

    def _with_suffix(self, row: Dict[str, Any], column: str, base: str, suffix: str):
        """Append ``suffix`` to ``column``, shortening the base only while the length limit drops it."""
        trimmed = base
        while True:
            candidate = dict(row)
            candidate[column] = f"{trimmed}{suffix}"
            identifier = self._identifier(candidate)
            plain = dict(row)
            plain[column] = trimmed
            if identifier and len(identifier) <= self.max_length and identifier != self._identifier(plain):
                return candidate, identifier
            if not trimmed:
                return None
            trimmed = trimmed[:-1]

    def _source_column(self, row: Dict[str, Any]) -> str:
        """Actual spelling of the last name column in ``row``."""
        wanted = self.last_name_column.casefold()
        for column in row:
            if str(column).casefold() == wanted:
                return column
        return self.last_name_column
