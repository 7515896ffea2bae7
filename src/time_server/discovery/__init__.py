"""Device discovery - serial GPS probe, pulse locator, gpsd device check."""

from .serial_probe import SerialProbe, NMEA_PATTERN, DEFAULT_PATTERNS, DEFAULT_BAUD_RATES
from .pulse_locator import PulseLocator, PulseStatusReader, SysfsPulseStatusReader
from .gpsd_query import GpsctlQuery, already_managed

__all__ = [
    'SerialProbe', 'NMEA_PATTERN', 'DEFAULT_PATTERNS', 'DEFAULT_BAUD_RATES',
    'PulseLocator', 'PulseStatusReader', 'SysfsPulseStatusReader',
    'GpsctlQuery', 'already_managed',
]
