"""
Configuration File Store

Reads and atomically writes the configuration files time-server owns:
chrony's conf.d snippets, /etc/default/gpsd, the certbot deploy hook and
the DNS credentials file.

Writes go to a temp file in the target directory that is then renamed over
the target, so chronyd and gpsd never see a partial file. Mode and
ownership are applied to the temp file before the rename.

Usage:
    store = ConfigStore()
    if store.update('/etc/chrony/conf.d/20-gps.conf', text):
        services.restart('chrony.service')
"""

import grp
import logging
import os
import pwd
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from ..errors import ProvisioningError

logger = logging.getLogger(__name__)


class ConfigStore:
    """Read-if-exists, write-atomically, write-if-changed."""

    def __init__(self):
        self.write_count = 0

    def read(self, path) -> Optional[str]:
        """Return file content, or None if the file does not exist."""
        path = Path(path)
        try:
            return path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ProvisioningError(f"Failed to read {path}: {e}") from e

    def exists(self, path) -> bool:
        return Path(path).exists()

    def ensure_directory(
        self,
        path,
        mode: int = 0o755,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ):
        """Create path if needed and apply mode and ownership."""
        path = Path(path)
        try:
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, mode)
            if owner is not None or group is not None:
                shutil.chown(path, user=owner, group=group)
        except (OSError, LookupError) as e:
            raise ProvisioningError(f"Failed to prepare directory {path}: {e}") from e

    def write(
        self,
        path,
        content: str,
        mode: int = 0o644,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ):
        """
        Atomically replace path with content.

        Args:
            path: Target file; parent directories are created
            content: Full file text
            mode: Permission bits applied before the rename
            owner: User name to chown to (unchanged when None)
            group: Group name to chown to (unchanged when None)

        Raises:
            ProvisioningError: if the file cannot be written
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            # Temp file in same directory (required for atomic rename)
            fd, temp_path = tempfile.mkstemp(
                dir=path.parent,
                prefix=f'.{path.name}.',
                suffix='.tmp'
            )
            try:
                with os.fdopen(fd, 'w') as f:
                    f.write(content)
                os.chmod(temp_path, mode)
                if owner is not None or group is not None:
                    uid = pwd.getpwnam(owner).pw_uid if owner is not None else -1
                    gid = grp.getgrnam(group).gr_gid if group is not None else -1
                    os.chown(temp_path, uid, gid)
                os.replace(temp_path, path)
            except BaseException:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        except (OSError, KeyError) as e:
            raise ProvisioningError(f"Failed to write {path}: {e}") from e

        self.write_count += 1
        logger.debug(f"Wrote {path} (mode {mode:o})")

    def restore(self, path, previous: Optional[str], mode: int = 0o644):
        """Put back content read before a write; None removes the file."""
        path = Path(path)
        if previous is not None:
            logger.warning(f"Restoring previous {path}")
            self.write(path, previous, mode=mode)
            return
        logger.warning(f"Removing {path}")
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ProvisioningError(f"Failed to remove {path}: {e}") from e

    def update(
        self,
        path,
        content: str,
        mode: int = 0o644,
        force: bool = False,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> bool:
        """
        Write path only if its content differs, or force is set.

        Returns:
            True if the file was written
        """
        existing = self.read(path)
        if existing == content and not force:
            logger.debug(f"{path} unchanged")
            return False

        if existing is None:
            logger.info(f"Creating {path} file...")
        else:
            logger.info(f"Updating {path} file...")
        self.write(path, content, mode=mode, owner=owner, group=group)
        return True
