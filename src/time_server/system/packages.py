"""
Package and service collaborators.

Thin wrappers over apt-get, dpkg-query and systemctl. All three are
idempotent: installing an installed package is a no-op, and is_active only
reads state.
"""

import logging
import os
import shutil
import subprocess
from typing import Iterable, List

from ..errors import CommandFailedError, MissingCommandError

logger = logging.getLogger(__name__)


def _run(cmd: List[str], env=None, timeout: float = None) -> subprocess.CompletedProcess:
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, capture_output=True, text=True, env=env, timeout=timeout)
    except FileNotFoundError as e:
        raise MissingCommandError(f"Command not found: {cmd[0]}") from e


class AptPackageManager:
    """
    Installs Debian packages on demand.

    needs_update is scoped to this instance: package lists are refreshed at
    most once, right before the first install that actually has work to do.
    """

    def __init__(self, apt: str = 'apt-get', dpkg_query: str = 'dpkg-query'):
        self.apt = apt
        self.dpkg_query = dpkg_query
        self.needs_update = True
        self.env = dict(os.environ, DEBIAN_FRONTEND='noninteractive')

    def ensure_available(self):
        """Abort unless apt is present."""
        if shutil.which(self.apt) is None:
            raise MissingCommandError(
                f"This tool requires '{self.apt}' to be installed. "
                "Are you running on a Debian-based system?"
            )

    def is_installed(self, name: str) -> bool:
        result = _run([self.dpkg_query, '-W', '-f=${Status}', name])
        return result.returncode == 0 and 'install ok installed' in result.stdout

    def ensure_installed(self, names: Iterable[str]):
        """Install whichever of names are missing."""
        missing = sorted(n for n in set(names) if not self.is_installed(n))
        if not missing:
            logger.debug(f"Already installed: {', '.join(sorted(set(names)))}")
            return

        if self.needs_update:
            logger.info("Updating package lists...")
            self._check(_run([self.apt, 'update', '-qq'], env=self.env), 'apt update')
            self.needs_update = False

        logger.info(f"Installing {', '.join(missing)}...")
        self._check(
            _run([self.apt, 'install', '-y', '-qq'] + missing, env=self.env),
            'apt install',
        )

    @staticmethod
    def _check(result: subprocess.CompletedProcess, what: str):
        if result.returncode != 0:
            raise CommandFailedError(
                f"{what} failed with status {result.returncode}: {result.stderr.strip()}"
            )


class SystemdServiceManager:
    """Queries and restarts systemd units."""

    def __init__(self, systemctl: str = 'systemctl'):
        self.systemctl = systemctl

    def is_active(self, name: str) -> bool:
        return _run([self.systemctl, 'is-active', '--quiet', name]).returncode == 0

    def restart(self, name: str):
        logger.info(f"Restarting {name}...")
        result = _run([self.systemctl, 'restart', name])
        if result.returncode != 0:
            raise CommandFailedError(
                f"systemctl restart {name} failed with status {result.returncode}: "
                f"{result.stderr.strip()}"
            )
