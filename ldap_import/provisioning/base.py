"""
Resource provisioning interface.

Per-account file shares (directory, share, access rules and quota) are created
by an external service on the file server. The import engine only needs to ask
whether a share exists and to request one.
"""

from abc import ABC, abstractmethod
from typing import List


class ProvisioningError(Exception):
    """Raised when a provisioning request fails."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ResourceProvisioner(ABC):
    """Abstract base class for share provisioning backends."""

    @abstractmethod
    def share_exists(self, host: str, share_name: str) -> bool:
        """
        Check whether a named share already exists on a host.

        Args:
            host: File server name
            share_name: Share name, e.g. ``jean.dupont$``

        Returns:
            True if the share exists

        Raises:
            ProvisioningError: If the check itself fails
        """
        pass

    @abstractmethod
    def provision_share(self, host: str, local_path: str, share_name: str,
                        account: str, subfolders: List[str]) -> None:
        """
        Create the folder, share, access rules and quota for one account.

        Args:
            host: File server name
            local_path: Parent path on the server under which the folder is created
            share_name: Share to publish
            account: Owning account in ``DOMAIN\\identifier`` form
            subfolders: Sub-folder names created inside the share

        Raises:
            ProvisioningError: If provisioning fails
        """
        pass

    def close(self):
        pass
