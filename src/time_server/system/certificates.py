"""
NTS certificate provisioning via certbot.

chronyd serves NTS only with a TLS certificate it can read. certbot obtains
it either with a Cloudflare DNS challenge (when an API token is given) or a
standalone HTTP challenge. A deploy hook copies renewed certificates into
chrony's certificate directory and restarts chrony.

Layout:
    /etc/chrony/certs/                      root:_chrony 0750
    /etc/chrony/certs/{fullchain,privkey}.pem   root:_chrony 0640 (via hook)
    /usr/local/bin/certbot-chrony-hook.sh   0755
    ~/.secrets/certbot/cloudflare.ini       0600
"""

import logging
import os
import subprocess
from typing import List, Optional

from ..errors import CommandFailedError, ConfigurationError, MissingCommandError
from ..output.config_store import ConfigStore
from .packages import AptPackageManager

logger = logging.getLogger(__name__)

CERTS_DIR = '/etc/chrony/certs'
CREDENTIALS_FILE = '~/.secrets/certbot/cloudflare.ini'
HOOK_PATH = '/usr/local/bin/certbot-chrony-hook.sh'
CHRONY_GROUP = '_chrony'
CHRONY_SERVICE = 'chrony.service'


def render_deploy_hook(certs_dir: str, group: str = CHRONY_GROUP,
                       service: str = CHRONY_SERVICE) -> str:
    """Shell hook run by certbot after each renewal."""
    return f"""#!/bin/sh
set -e

cp "${{RENEWED_LINEAGE}}/fullchain.pem" {certs_dir}/
cp "${{RENEWED_LINEAGE}}/privkey.pem" {certs_dir}/
chown root:{group} {certs_dir}/fullchain.pem
chown root:{group} {certs_dir}/privkey.pem
chmod 640 {certs_dir}/fullchain.pem
chmod 640 {certs_dir}/privkey.pem
systemctl restart {service}
"""


def nts_server_lines(certs_dir: str) -> List[str]:
    return [
        f"ntsservercert {certs_dir}/fullchain.pem",
        f"ntsserverkey {certs_dir}/privkey.pem",
    ]


class CertificateManager:
    """
    Obtains the NTS certificate and installs the renewal hook.

    Usage:
        manager = CertificateManager(store, packages)
        lines = manager.obtain('ntp.example.com', 'info@example.com', token)
    """

    def __init__(
        self,
        store: ConfigStore,
        packages: AptPackageManager,
        certs_dir: str = CERTS_DIR,
        credentials_file: str = CREDENTIALS_FILE,
        hook_path: str = HOOK_PATH,
        group: str = CHRONY_GROUP,
        service: str = CHRONY_SERVICE,
        certbot: str = 'certbot',
    ):
        self.store = store
        self.packages = packages
        self.certs_dir = certs_dir
        self.credentials_file = os.path.expanduser(credentials_file)
        self.hook_path = hook_path
        self.group = group
        self.service = service
        self.certbot = certbot

    def obtain(self, domain: str, email: str, token: Optional[str] = None) -> List[str]:
        """
        Obtain a certificate for domain and return the chrony NTS lines.

        Raises:
            ConfigurationError: domain or email missing
            CommandFailedError: certbot failed
        """
        logger.info("Enabling TLS support...")
        if not domain or not email:
            raise ConfigurationError(
                "DOMAIN and EMAIL must be set for TLS support "
                "(either via environment variables or command-line options)."
            )

        if token:
            logger.debug("Checking Cloudflare credentials file...")
            self.store.update(
                self.credentials_file,
                f"dns_cloudflare_api_token = {token}\n",
                mode=0o600,
            )

        logger.debug("Installing certbot...")
        self.packages.ensure_installed({'certbot'})

        logger.debug(f"Creating {self.certs_dir} directory...")
        self.store.ensure_directory(self.certs_dir, mode=0o750, owner='root', group=self.group)

        if self.store.exists(self.hook_path):
            logger.debug(f"Existing {self.hook_path} file...")
        else:
            logger.info(f"Creating {self.hook_path} file...")
            self.store.write(
                self.hook_path,
                render_deploy_hook(self.certs_dir, self.group, self.service),
                mode=0o755,
            )

        if token:
            logger.debug("Installing certbot-dns-cloudflare...")
            self.packages.ensure_installed({'python3-certbot-dns-cloudflare'})
            logger.info(f"Obtaining TLS certificate for {domain}... using Cloudflare DNS")
            challenge = ['--dns-cloudflare', '--dns-cloudflare-credentials', self.credentials_file]
        else:
            logger.info(f"Obtaining TLS certificate for {domain}... using HTTP challenge")
            challenge = ['--standalone']

        self._run_certbot(challenge + [
            '--email', email,
            '--deploy-hook', self.hook_path,
            '--agree-tos',
            '--non-interactive',
            '-d', domain,
        ])
        logger.info("TLS certificate obtained successfully.")
        logger.debug(
            f"You can test the TLS connection with: "
            f"chronyd -Q -t 3 'server {domain} iburst nts maxsamples 1'"
        )
        return nts_server_lines(self.certs_dir)

    def _run_certbot(self, args: List[str]):
        cmd = [self.certbot, 'certonly'] + args
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise MissingCommandError(f"Command not found: {self.certbot}") from e
        if result.returncode != 0:
            raise CommandFailedError(
                f"certbot failed with status {result.returncode}: {result.stderr.strip()}"
            )
