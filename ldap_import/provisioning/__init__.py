"""
Share provisioning backends.
"""

from ldap_import.provisioning.base import ResourceProvisioner, ProvisioningError

__all__ = ['ResourceProvisioner', 'ProvisioningError']
