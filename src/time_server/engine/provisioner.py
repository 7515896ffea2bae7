"""
Scan-and-configure engine.

One run:

    apt present? ─▶ install gpsd + chrony ─▶ gpsd.socket active?
          │
          ▼
    gpsd already managing a device? ──yes──┐
          │ no (or --force)                │
          ▼                                │
    serial probe ─▶ /etc/default/gpsd      │
          │                                │
          ▼                                ▼
    pulse locator (PPS, then PHC) ◀────────┘
          │
          ▼
    chrony refclocks + server file ─▶ restart chrony if changed
          │
          ▼
    NTS certificate (optional) ─▶ server file ─▶ restart chrony if changed

Every step is re-runnable. Files are only rewritten when their content
changes, so a second run on unchanged hardware writes nothing and restarts
nothing. A file whose service fails to restart is rolled back, so the
next run retries the restart.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import psutil

from ..discovery.gpsd_query import GpsctlQuery, already_managed, QUERY_TIMEOUT
from ..discovery.pulse_locator import PulseLocator
from ..discovery.serial_probe import (
    DEFAULT_BAUD_RATES,
    DEFAULT_PATTERNS,
    LINE_TIMEOUT,
    MAX_LINES,
    NMEA_REGEX,
    READ_TIMEOUT,
    SerialProbe,
)
from ..errors import ServiceInactiveError
from ..interfaces.clock_sources import ProbeResult, PulseReference
from ..output.chrony_config import ChronyConfigurator, nts_lines_in
from ..output.config_store import ConfigStore
from ..output.gpsd_defaults import DEFAULTS_FILE, render_gpsd_defaults
from ..system.certificates import CertificateManager
from ..system.packages import AptPackageManager, SystemdServiceManager

logger = logging.getLogger(__name__)

CHRONY_CONF_SERVER = '/etc/chrony/conf.d/10-server.conf'
CHRONY_CONF_GPS = '/etc/chrony/conf.d/20-gps.conf'
CHRONY_SERVICE = 'chrony.service'
GPSD_SERVICE = 'gpsd.socket'


def total_memory() -> int:
    """Total physical memory in bytes."""
    return psutil.virtual_memory().total


@dataclass
class ProvisionReport:
    """What one run found and changed."""
    managed_device: Optional[str] = None
    probe: Optional[ProbeResult] = None
    pulse: PulseReference = field(default_factory=PulseReference.none)
    files_written: List[str] = field(default_factory=list)
    gpsd_restarted: bool = False
    chrony_restarted: bool = False
    tls_configured: bool = False


class Provisioner:
    """
    Installs gpsd and chrony, finds the GPS receiver and writes chrony's
    refclock configuration.

    Collaborators default to the real system ones and can be replaced for
    testing.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        domain: Optional[str] = None,
        email: Optional[str] = None,
        token: Optional[str] = None,
        force: bool = False,
        packages: Optional[AptPackageManager] = None,
        services: Optional[SystemdServiceManager] = None,
        store: Optional[ConfigStore] = None,
        probe: Optional[SerialProbe] = None,
        locator: Optional[PulseLocator] = None,
        query_fn: Optional[Callable[[float], Optional[str]]] = None,
        memory_fn: Callable[[], int] = total_memory,
        certificates: Optional[CertificateManager] = None,
    ):
        self.config = config
        self.domain = domain
        self.email = email
        self.token = token
        self.force = force

        probe_config = config.get('probe', {})
        pulse_config = config.get('pulse', {})
        gpsd_config = config.get('gpsd', {})
        chrony_config = config.get('chrony', {})
        tls_config = config.get('tls', {})

        self.patterns = probe_config.get('patterns', DEFAULT_PATTERNS)
        self.baud_rates = probe_config.get('baud_rates', DEFAULT_BAUD_RATES)

        self.gpsd_defaults_file = gpsd_config.get('defaults_file', DEFAULTS_FILE)
        self.gpsd_service = gpsd_config.get('service', GPSD_SERVICE)
        self.query_timeout = gpsd_config.get('query_timeout', QUERY_TIMEOUT)

        self.server_conf = chrony_config.get('server_conf', CHRONY_CONF_SERVER)
        self.gps_conf = chrony_config.get('gps_conf', CHRONY_CONF_GPS)
        self.chrony_service = chrony_config.get('service', CHRONY_SERVICE)

        self.packages = packages or AptPackageManager()
        self.services = services or SystemdServiceManager()
        self.store = store or ConfigStore()
        self.probe = probe or SerialProbe(
            line_timeout=probe_config.get('line_timeout', LINE_TIMEOUT),
            read_timeout=probe_config.get('read_timeout', READ_TIMEOUT),
            max_lines=probe_config.get('max_lines', MAX_LINES),
        )
        self.locator = locator or PulseLocator(
            **{k: v for k, v in pulse_config.items() if k in (
                'pps_pattern', 'pps_status', 'pps_separator', 'phc_pattern', 'phc_status'
            )}
        )
        self.query_fn = query_fn or GpsctlQuery()
        self.memory_fn = memory_fn
        self.configurator = ChronyConfigurator(
            **{k: v for k, v in chrony_config.items() if k in (
                'refid', 'shm_unit', 'client_log_low', 'client_log_high', 'client_log_cap'
            )}
        )
        self.certificates = certificates or CertificateManager(
            self.store,
            self.packages,
            **{k: v for k, v in tls_config.items() if k in (
                'certs_dir', 'credentials_file', 'hook_path', 'group'
            )},
            service=self.chrony_service,
        )

    def run(self) -> ProvisionReport:
        """Run the whole scan-and-configure operation once."""
        report = ProvisionReport()

        logger.debug("##### 1. installing gpsd and chrony #####")
        self.packages.ensure_available()
        self.packages.ensure_installed({'gpsd', 'chrony'})

        logger.debug("##### 2. configuring gpsd #####")
        device = self.discover_receiver(report)

        if device:
            report.pulse = self.locator.locate(device)

        logger.debug("##### 3. configuring chrony #####")
        if self.configure_chrony(report):
            logger.info("Done! GPSD and Chrony have been installed and configured successfully.")
            logger.info(f"You can check the status of Chrony with: systemctl status {self.chrony_service}")
            logger.info("To verify GPS synchronization, use: chronyc sources -v")
        else:
            logger.info("Chrony configuration unchanged, nothing to restart.")

        logger.debug("##### 4. configuring chrony for TLS support #####")
        self.configure_tls(report)

        return report

    def apply(self, service: str, files, report: ProvisionReport, restart: bool = False) -> bool:
        """
        Write changed files, then restart service.

        If the restart fails the files are put back as they were, so the
        next run sees the same difference and restarts again.

        Args:
            service: Unit to restart when any file changed
            files: (path, content) pairs
            restart: Restart even if nothing changed

        Returns:
            True if service was restarted
        """
        previous = {}
        for path, text in files:
            existing = self.store.read(path)
            if self.store.update(path, text, mode=0o644, force=self.force):
                previous[path] = existing
                report.files_written.append(str(path))

        if not (previous or restart):
            return False

        try:
            self.services.restart(service)
        except Exception:
            logger.error(f"Restarting {service} failed, rolling back {len(previous)} file(s)")
            for path, existing in previous.items():
                self.store.restore(path, existing, mode=0o644)
                report.files_written.remove(str(path))
            raise
        return True

    def discover_receiver(self, report: ProvisionReport) -> Optional[str]:
        """
        Find the receiver gpsd should drive.

        Returns:
            Device path, or None when no receiver is known
        """
        logger.info("Checking if gpsd is active...")
        if not self.services.is_active(self.gpsd_service):
            raise ServiceInactiveError(
                f"gpsd service is not active. Please start it with "
                f"'systemctl start {self.gpsd_service}' or check its status."
            )
        logger.debug("gpsd service is active.")

        if self.force:
            logger.info("Forced reconfiguration, scanning for a GPS device")
        else:
            managed = already_managed(self.query_fn, timeout=self.query_timeout)
            if managed:
                report.managed_device = managed
                report.probe = ProbeResult(device=managed, baud_rate=None, confirmed=True)
                return managed

        result = self.probe.probe(self.patterns, self.baud_rates, NMEA_REGEX)
        if result is None:
            return None

        report.probe = result
        existing = self.store.read(self.gpsd_defaults_file)
        content = render_gpsd_defaults(existing, result.device, result.baud_rate)
        if self.apply(self.gpsd_service, [(self.gpsd_defaults_file, content)], report):
            logger.info(f"{self.gpsd_defaults_file} updated.")
            report.gpsd_restarted = True
        return result.device

    def configure_chrony(self, report: ProvisionReport) -> bool:
        """Write the refclock and server files; True if chrony was restarted."""
        configuration = self.configurator.build_configuration(report.probe, report.pulse)
        for line in configuration.to_lines():
            logger.info(f"  {line}")
        gps_text = self.configurator.render(configuration)

        limit = self.configurator.client_log_limit(self.memory_fn())
        if limit is None:
            logger.debug("Not enough memory to raise clientloglimit")
        existing_server = self.store.read(self.server_conf)
        server_text = self.configurator.render_server_config(limit, nts_lines_in(existing_server))

        files = [(self.server_conf, server_text), (self.gps_conf, gps_text)]
        if self.apply(self.chrony_service, files, report, restart=self.force):
            report.chrony_restarted = True
            return True
        return False

    def configure_tls(self, report: ProvisionReport) -> bool:
        """
        Obtain the NTS certificate when both domain and email are set.

        Returns:
            True if the server file gained the NTS lines and chrony was restarted
        """
        if not (self.domain and self.email):
            if self.domain or self.email:
                logger.warning(
                    "For TLS support, both DOMAIN and EMAIL must be provided. "
                    "TLS will not be configured."
                )
            return False

        nts_lines = self.certificates.obtain(self.domain, self.email, self.token)
        report.tls_configured = True

        existing = self.store.read(self.server_conf)
        if all(line in nts_lines_in(existing) for line in nts_lines):
            logger.debug(f"TLS certificate already configured in {self.server_conf}.")
            return False

        logger.debug(f"Configuring TLS certificate in {self.server_conf}...")
        limit = self.configurator.client_log_limit(self.memory_fn())
        text = self.configurator.render_server_config(limit, nts_lines)
        self.apply(self.chrony_service, [(self.server_conf, text)], report, restart=True)
        report.chrony_restarted = True
        return True
