"""Output adapters - chrony refclock config, gpsd defaults, atomic config store."""

from .chrony_config import ChronyConfigurator, client_log_limit, SHM_KEY_BASE
from .config_store import ConfigStore
from .gpsd_defaults import render_gpsd_defaults

__all__ = ['ChronyConfigurator', 'client_log_limit', 'SHM_KEY_BASE', 'ConfigStore', 'render_gpsd_defaults']
