"""Scan-and-configure engine."""

from .provisioner import Provisioner, ProvisionReport

__all__ = ['Provisioner', 'ProvisionReport']
