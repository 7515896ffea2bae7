"""System collaborators - apt packages, systemd services, certbot."""

from .packages import AptPackageManager, SystemdServiceManager
from .certificates import CertificateManager

__all__ = ['AptPackageManager', 'SystemdServiceManager', 'CertificateManager']
