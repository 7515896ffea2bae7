#!/usr/bin/env python3
"""
time-server: GPS-disciplined chrony provisioning

Installs and configures gpsd and chrony on Debian-based systems. One run:
1. Installs gpsd and chrony
2. Asks gpsd whether it already drives a GPS receiver
3. Otherwise scans serial ports for NMEA output and points gpsd at it
4. Looks for a PPS or PTP hardware clock pulse next to the receiver
5. Writes chrony refclocks with the pulse (if any) preferred over NMEA
6. Optionally obtains a TLS certificate and enables NTS

Usage:
    # Detect and configure
    time-server

    # Re-scan even if gpsd already has a device
    time-server --force

    # Also enable NTS with a Cloudflare DNS challenge
    time-server -d ntp.example.com -e info@example.com -t <token>

The run is idempotent: files are only rewritten when their content would
change, and chrony is only restarted when something changed.
"""

import argparse
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
import toml

# Set up logging before imports that use it
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger('time-server')

from .discovery.serial_probe import (
    DEFAULT_BAUD_RATES,
    DEFAULT_PATTERNS,
    LINE_TIMEOUT,
    MAX_LINES,
    READ_TIMEOUT,
)
from .discovery.gpsd_query import QUERY_TIMEOUT
from .discovery.pulse_locator import (
    PHC_PATTERN,
    PHC_STATUS,
    PPS_PATTERN,
    PPS_SEPARATOR,
    PPS_STATUS,
)
from .engine.provisioner import (
    CHRONY_CONF_GPS,
    CHRONY_CONF_SERVER,
    CHRONY_SERVICE,
    GPSD_SERVICE,
    Provisioner,
)
from .errors import ProvisioningError
from .output.chrony_config import (
    CLIENT_LOG_CAP,
    CLIENT_LOG_HIGH,
    CLIENT_LOG_LOW,
    GPS_REFID,
    SHM_UNIT,
)
from .output.gpsd_defaults import DEFAULTS_FILE
from .system.certificates import CERTS_DIR, CHRONY_GROUP, CREDENTIALS_FILE, HOOK_PATH

# Any other non-empty value turns a flag on
FALSE_VALUES = ('0', 'false')

DEFAULT_CONFIG: Dict[str, Any] = {
    'probe': {
        'patterns': DEFAULT_PATTERNS,
        'baud_rates': DEFAULT_BAUD_RATES,
        'line_timeout': LINE_TIMEOUT,
        'read_timeout': READ_TIMEOUT,
        'max_lines': MAX_LINES,
    },
    'pulse': {
        'pps_pattern': PPS_PATTERN,
        'pps_status': PPS_STATUS,
        'pps_separator': PPS_SEPARATOR,
        'phc_pattern': PHC_PATTERN,
        'phc_status': PHC_STATUS,
    },
    'gpsd': {
        'defaults_file': DEFAULTS_FILE,
        'query_timeout': QUERY_TIMEOUT,
        'service': GPSD_SERVICE,
    },
    'chrony': {
        'server_conf': CHRONY_CONF_SERVER,
        'gps_conf': CHRONY_CONF_GPS,
        'service': CHRONY_SERVICE,
        'refid': GPS_REFID,
        'shm_unit': SHM_UNIT,
        'client_log_low': CLIENT_LOG_LOW,
        'client_log_high': CLIENT_LOG_HIGH,
        'client_log_cap': CLIENT_LOG_CAP,
    },
    'tls': {
        'certs_dir': CERTS_DIR,
        'credentials_file': CREDENTIALS_FILE,
        'hook_path': HOOK_PATH,
        'group': CHRONY_GROUP,
    },
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from TOML file.

    Sections in the file are merged key by key over the defaults, so a file
    only needs the settings it changes.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path and Path(config_path).exists():
        with open(config_path, 'r') as f:
            overrides = toml.load(f)
        for section, values in overrides.items():
            if isinstance(values, dict) and isinstance(config.get(section), dict):
                config[section].update(values)
            else:
                config[section] = values
    elif config_path:
        logger.warning(f"Config file {config_path} not found, using defaults")
    return config


def env_flag(name: str) -> bool:
    value = os.environ.get(name, '').strip().lower()
    return bool(value) and value not in FALSE_VALUES


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog='time-server',
        description='Install and configure GPSD and Chrony on Debian-based systems.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    DOMAIN              Domain name for TLS support (e.g., "ntp.example.com")
    EMAIL               Email address for TLS support (e.g., "info@example.com")
    CLOUDFLARE_TOKEN    Cloudflare API token for DNS challenge
    DEBUG               Set to "1" or "true" to enable debug messages
    FORCE               Set to "1" or "true" to force reconfiguration

Examples:
    # Detect the GPS receiver and configure chrony
    time-server

    # Enable NTS using a Cloudflare DNS challenge
    time-server -d ntp.example.com -e info@example.com -t <token>
        """
    )
    parser.add_argument(
        '--domain', '-d',
        default=os.environ.get('DOMAIN'),
        help='Domain name for TLS certificate (e.g., "ntp.example.com"). '
             'Overrides the DOMAIN environment variable.'
    )
    parser.add_argument(
        '--email', '-e',
        default=os.environ.get('EMAIL'),
        help='Email address for TLS certificate (e.g., "info@example.com"). '
             'Overrides the EMAIL environment variable.'
    )
    parser.add_argument(
        '--token', '-t',
        default=os.environ.get('CLOUDFLARE_TOKEN'),
        help='Cloudflare API token for DNS challenge. '
             'Overrides the CLOUDFLARE_TOKEN environment variable.'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        default=env_flag('DEBUG'),
        help='Enable debug messages'
    )
    parser.add_argument(
        '--force', '-f',
        action='store_true',
        default=env_flag('FORCE'),
        help='Re-scan for a GPS device and rewrite configuration even if unchanged'
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to TOML configuration file'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.debug(f"DOMAIN={args.domain}")
    logger.debug(f"EMAIL={args.email}")
    # Only indicate if set, never the value itself
    logger.debug(f"CLOUDFLARE_TOKEN={'SET' if args.token else ''}")
    logger.debug(f"DEBUG={args.debug}")
    logger.debug(f"FORCE={args.force}")

    config = load_config(args.config)

    provisioner = Provisioner(
        config,
        domain=args.domain,
        email=args.email,
        token=args.token,
        force=args.force,
    )
    try:
        provisioner.run()
    except ProvisioningError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
