"""
time-server: GPS-disciplined chrony provisioning

Turns a Debian host with an attached GPS/GNSS receiver into a time server.
It finds the receiver on a serial port, points gpsd at it, looks for a PPS
or PTP hardware clock pulse next to it, and writes chrony's refclock
configuration with the most accurate source preferred.

Architecture:
    serial ports → SerialProbe → gpsd (SHM 0) ─┐
    /dev/pps*, /dev/ptp* → PulseLocator ───────┴→ ChronyConfigurator → chronyd

Version: 1.0.0
"""

__version__ = "1.0.0"

from .interfaces.clock_sources import (
    ProbeResult,
    PulseKind,
    PulseReference,
    DirectiveRole,
    RefclockDirective,
    ClockConfiguration,
)

__all__ = [
    "ProbeResult",
    "PulseKind",
    "PulseReference",
    "DirectiveRole",
    "RefclockDirective",
    "ClockConfiguration",
    "__version__",
]
