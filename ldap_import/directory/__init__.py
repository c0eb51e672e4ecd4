"""
Directory backends.
"""

from ldap_import.directory.base import (
    DirectoryService,
    DirectoryChild,
    DirectoryError,
    DirectoryUnavailable,
)

__all__ = ['DirectoryService', 'DirectoryChild', 'DirectoryError', 'DirectoryUnavailable']
