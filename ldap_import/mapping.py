"""
Row mapping from import columns to directory attributes.

Each target attribute is described by a template containing ``%column%`` or
``%column:modifier%`` tokens. Rendered values are normalized according to the
kind of attribute (identifier, display name, contact) and a few attributes are
completed from the others when the import file does not provide them.

The mapper is pure: the same row and mapping always produce the same record.
"""

import re
import logging
import unicodedata
from typing import Dict, Any, Callable, List, Optional

from ldap_import.models import AttributeMap

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r'%([^:%]+)(?::([^%]+))?%')

FORBIDDEN_IDENTIFIER_CHARS = re.compile(r'["/\\\[\]:;|=,+*?<>@#$%^&(){}!~`]')
IDENTIFIER_SEPARATORS = re.compile(r"[\s'_\-]+")
REPEATED_DOTS = re.compile(r'\.{2,}')

DISPLAY_ATTRIBUTES = frozenset({'displayname', 'cn', 'name'})
NAME_ATTRIBUTES = frozenset({'givenname', 'sn'})
CONTACT_ATTRIBUTES = frozenset({'mail', 'userprincipalname'})


class ValidationError(Exception):
    """Raised when an import row cannot produce a usable record."""
    pass


class MissingIdentityError(ValidationError):
    """Raised when the identifier attribute is empty after mapping."""

    def __init__(self, row: Dict[str, Any], attribute: str):
        self.row = dict(row)
        self.attribute = attribute
        super().__init__(f"Row has no usable {attribute}: {self.row}")


def strip_diacritics(value: str) -> str:
    decomposed = unicodedata.normalize('NFD', value)
    return ''.join(ch for ch in decomposed if unicodedata.category(ch) != 'Mn')


def _camel_words(value: str):
    return [word for word in re.split(r'[\s_\-]+', value) if word]


def _camelcase(value: str) -> str:
    words = _camel_words(value)
    if not words:
        return ''
    return words[0].lower() + ''.join(w[:1].upper() + w[1:].lower() for w in words[1:])


def _pascalcase(value: str) -> str:
    return ''.join(w[:1].upper() + w[1:].lower() for w in _camel_words(value))


MODIFIERS: Dict[str, Callable[[str], str]] = {
    'uppercase': str.upper,
    'lowercase': str.lower,
    'first': lambda value: value[:1],
    'firstchar': lambda value: value[:1],
    'capitalize': lambda value: value[:1].upper() + value[1:].lower(),
    'trim': str.strip,
    'camelcase': _camelcase,
    'pascalcase': _pascalcase,
}


def apply_modifier(value: str, modifier: Optional[str]) -> str:
    if not modifier:
        return value
    func = MODIFIERS.get(modifier.strip().lower())
    if func is None:
        logger.warning(f"Unknown template modifier '{modifier}', value left unchanged")
        return value
    return func(value)


def normalize_identifier(value: str, max_length: int = 20) -> str:
    """
    Normalize an account identifier.

    Removes diacritics and forbidden characters, joins words with dots and
    enforces ``max_length`` by shortening the first name part, then the last
    name part, then truncating.
    """
    result = strip_diacritics(value or '').lower()
    result = FORBIDDEN_IDENTIFIER_CHARS.sub('', result)
    result = IDENTIFIER_SEPARATORS.sub('.', result)
    result = REPEATED_DOTS.sub('.', result).strip('.')
    if not result:
        return ''
    if result[0].isdigit():
        result = 'u' + result
    if len(result) <= max_length:
        return result

    first, dot, last = result.partition('.')
    if dot and last:
        overflow = len(result) - max_length
        keep_first = max(1, len(first) - overflow)
        first = first[:keep_first]
        candidate = f"{first}.{last}"
        if len(candidate) > max_length:
            last = last[:max(1, max_length - len(first) - 1)]
            candidate = f"{first}.{last}"
        result = candidate
    return result[:max_length].rstrip('.')


def title_case(value: str) -> str:
    def _cap(match):
        word = match.group(0)
        return word[:1].upper() + word[1:].lower()
    return re.sub(r"[^\s\-']+", _cap, value)


def capitalize_name(value: str) -> str:
    if len(value) > 2:
        return value[:1].upper() + value[1:]
    return value


def normalize_contact(value: str) -> str:
    return re.sub(r'\s+', '', value).lower()


class RowMapper:
    """
    Maps import rows to directory attribute records.

    Args:
        attribute_mapping: Ordered mapping of target attribute to template
        identifier_attribute: Attribute holding the account identifier
        max_identifier_length: Maximum identifier length after normalization
        upn_suffix: Domain used to complete ``userPrincipalName``
        identifier_attributes: Further attributes normalized like the identifier
    """

    def __init__(self, attribute_mapping: Dict[str, str],
                 identifier_attribute: str = 'sAMAccountName',
                 max_identifier_length: int = 20,
                 upn_suffix: str = '',
                 identifier_attributes: Optional[List[str]] = None):
        self.attribute_mapping = dict(attribute_mapping)
        self.identifier_attribute = identifier_attribute
        self.max_identifier_length = max_identifier_length
        self.upn_suffix = upn_suffix.lstrip('@')
        self.identifier_attributes = {identifier_attribute.casefold()}
        self.identifier_attributes.update(name.casefold() for name in identifier_attributes or [])

    @classmethod
    def from_settings(cls, settings) -> 'RowMapper':
        return cls(
            settings.attribute_mapping,
            identifier_attribute=settings.identifier_attribute,
            max_identifier_length=settings.max_identifier_length,
            upn_suffix=settings.upn_suffix,
            identifier_attributes=settings.identifier_attributes,
        )

    def render(self, template: str, row: AttributeMap) -> str:
        """Substitute every token of ``template`` from ``row``."""
        def _substitute(match):
            column = match.group(1).strip()
            if column not in row:
                logger.debug(f"Column '{column}' not present in row, rendering empty")
                return ''
            value = row[column]
            return apply_modifier('' if value is None else str(value).strip(), match.group(2))

        return TOKEN_PATTERN.sub(_substitute, template or '').strip()

    def map_row(self, row: Dict[str, Any]) -> AttributeMap:
        """
        Map one import row to a normalized attribute record.

        Args:
            row: Column name to raw value

        Returns:
            Normalized attribute record

        Raises:
            MissingIdentityError: If no identifier can be derived for the row
        """
        source = AttributeMap(row)
        record = AttributeMap()

        for attribute, template in self.attribute_mapping.items():
            value = self.render(template, source)
            value = self._normalize(attribute, value)
            if value:
                record[attribute] = value

        self._complete(record)

        if not record.get(self.identifier_attribute):
            raise MissingIdentityError(row, self.identifier_attribute)
        return record

    def _normalize(self, attribute: str, value: str) -> str:
        if not value:
            return value
        folded = attribute.casefold()
        if folded in self.identifier_attributes:
            return normalize_identifier(value, self.max_identifier_length)
        if folded in DISPLAY_ATTRIBUTES:
            return title_case(value)
        if folded in NAME_ATTRIBUTES:
            return capitalize_name(value)
        if folded in CONTACT_ATTRIBUTES:
            return normalize_contact(value)
        return value

    def _complete(self, record: AttributeMap):
        """Fill identifier, displayName and userPrincipalName from other attributes."""
        given = record.get('givenName', '')
        surname = record.get('sn', '')

        if not record.get(self.identifier_attribute) and given and surname:
            identifier = normalize_identifier(f"{given}.{surname}", self.max_identifier_length)
            if identifier:
                record[self.identifier_attribute] = identifier

        if not record.get('displayName') and (given or surname):
            record['displayName'] = title_case(f"{given} {surname}".strip())

        if not record.get('userPrincipalName'):
            if record.get('mail'):
                record['userPrincipalName'] = record['mail']
            elif self.upn_suffix and record.get(self.identifier_attribute):
                record['userPrincipalName'] = f"{record[self.identifier_attribute]}@{self.upn_suffix}".lower()


def _container_accessor(record: AttributeMap, context: Dict[str, Any]) -> str:
    return context.get('container', '')


PLACEHOLDERS: Dict[str, Callable[[AttributeMap, Dict[str, Any]], str]] = {
    'username': lambda record, context: record.get(context.get('identifier_attribute', 'sAMAccountName'), ''),
    'givenname': lambda record, context: record.get('givenName', ''),
    'sn': lambda record, context: record.get('sn', ''),
    'displayname': lambda record, context: record.get('displayName', ''),
    'mail': lambda record, context: record.get('mail', ''),
    'container': _container_accessor,
}


def render_placeholders(template: str, record: AttributeMap, **context) -> str:
    """
    Render ``%name%`` placeholders from a mapped record.

    Only names present in ``PLACEHOLDERS`` are resolved; unknown placeholders
    are left in place and logged.
    """
    def _substitute(match):
        name = match.group(1).strip().lower()
        accessor = PLACEHOLDERS.get(name)
        if accessor is None:
            logger.warning(f"Unknown placeholder '%{name}%' in template '{template}'")
            return match.group(0)
        return str(accessor(record, context) or '')

    return TOKEN_PATTERN.sub(_substitute, template or '')


def template_errors(template: str) -> List[str]:
    """
    Problems that would stop ``template`` from rendering a usable value.

    Reports unknown ``%name%`` placeholders and ``{name}`` format fields,
    which templates do not support.
    """
    errors = []
    for match in TOKEN_PATTERN.finditer(template or ''):
        name = match.group(1).strip().lower()
        if name not in PLACEHOLDERS:
            errors.append(f"unknown placeholder '%{name}%'")
    if '{' in (template or '') or '}' in (template or ''):
        errors.append("'{...}' fields are not supported, use %placeholder% tokens")
    return errors
