"""
Chrony Refclock Configuration

Builds the chrony configuration that exposes the GPS receiver found by the
discovery stage, with any pulse signal taking precedence.

gpsd publishes NMEA time through the NTP shared-memory protocol, segment 0
(key 0x4e545030 = "NTP0"). chronyd reads it with the SHM driver:

    refclock SHM 0 refid GPS0 poll 0 filter 3 prefer trust

NMEA time is only good to tens of milliseconds. When a PPS or PHC pulse is
available, the pulse becomes the selected source and the SHM segment only
numbers the seconds for it:

    refclock PPS /dev/pps0 lock GPS0 refid PPS0 poll 0 prefer trust
    refclock SHM 0 refid GPS0 poll 0 filter 3 noselect

The rendered text is compared with the file on disk to decide whether a
rewrite and a chrony restart are needed, so it must be byte-identical for
identical inputs: no timestamps, no host details.

Reference:
- https://chrony-project.org/doc/4.3/chrony.conf.html#refclock
- https://gpsd.gitlab.io/gpsd/gpsd-time-service-howto.html
"""

import logging
from typing import List, Optional, Sequence

from ..interfaces.clock_sources import (
    ClockConfiguration,
    DirectiveRole,
    ProbeResult,
    PulseKind,
    PulseReference,
    RefclockDirective,
)

logger = logging.getLogger(__name__)


# SHM segment key base (NTP convention), key = base + unit
SHM_KEY_BASE = 0x4e545030

GPS_REFID = 'GPS0'
SHM_UNIT = 0

COARSE_OPTIONS = 'poll 0 filter 3'
PULSE_OPTIONS = 'poll 0'

GIB = 1024 ** 3

# clientloglimit tiers, by total system memory
CLIENT_LOG_LOW = 1 * GIB     # below this: leave chrony's default
CLIENT_LOG_HIGH = 4 * GIB    # at or above this: fixed cap
CLIENT_LOG_CAP = 2 * GIB


def client_log_limit(
    total_memory: int,
    low: int = CLIENT_LOG_LOW,
    high: int = CLIENT_LOG_HIGH,
    cap: int = CLIENT_LOG_CAP,
) -> Optional[int]:
    """
    Choose chrony's clientloglimit from total system memory.

    Args:
        total_memory: Total memory in bytes

    Returns:
        None below low (omit the directive), total_memory // 2 from low up
        to high, cap at or above high
    """
    if total_memory < low:
        return None
    if total_memory < high:
        return total_memory // 2
    return cap


class ChronyConfigurator:
    """
    Derives and renders chrony refclock configuration.

    Usage:
        configurator = ChronyConfigurator()
        config = configurator.build_configuration(probe, pulse)
        text = configurator.render(config)
    """

    def __init__(
        self,
        refid: str = GPS_REFID,
        shm_unit: int = SHM_UNIT,
        client_log_low: int = CLIENT_LOG_LOW,
        client_log_high: int = CLIENT_LOG_HIGH,
        client_log_cap: int = CLIENT_LOG_CAP,
    ):
        self.refid = refid
        self.shm_unit = shm_unit
        self.client_log_low = client_log_low
        self.client_log_high = client_log_high
        self.client_log_cap = client_log_cap

    def build_configuration(
        self,
        probe: Optional[ProbeResult],
        pulse: PulseReference,
    ) -> ClockConfiguration:
        """
        Order the refclock directives for a probe/pulse pair.

        Without a pulse the SHM source is preferred and trusted. With a PPS
        or PHC pulse, the pulse directive comes first, is locked to the SHM
        refid and preferred; the SHM directive becomes noselect.
        """
        directives: List[RefclockDirective] = []

        if pulse.kind == PulseKind.NONE:
            coarse_role = DirectiveRole.PREFERRED
        else:
            coarse_role = DirectiveRole.NOSELECT
            directives.append(self._pulse_directive(pulse))

        directives.append(RefclockDirective(
            driver='SHM',
            parameter=str(self.shm_unit),
            refid=self.refid,
            role=coarse_role,
            options=COARSE_OPTIONS,
        ))

        return ClockConfiguration(directives=directives, probe=probe, pulse=pulse)

    def _pulse_directive(self, pulse: PulseReference) -> RefclockDirective:
        if pulse.kind == PulseKind.PPS:
            driver, parameter, refid = 'PPS', pulse.path, 'PPS0'
        else:
            # PHC external timestamps are the pulse edges fed to a pin
            driver, parameter, refid = 'PHC', f"{pulse.path}:extpps", 'PHC0'
        return RefclockDirective(
            driver=driver,
            parameter=parameter,
            refid=refid,
            role=DirectiveRole.PREFERRED,
            lock=self.refid,
            options=PULSE_OPTIONS,
        )

    def render(self, configuration: ClockConfiguration) -> str:
        """Render the GPS refclock file."""
        lines = [
            "# GPS reference clocks, generated by time-server",
            f"# SHM {self.shm_unit} is the gpsd time segment "
            f"(key 0x{SHM_KEY_BASE + self.shm_unit:08x})",
        ]
        if configuration.probe is not None:
            lines.append(f"# Receiver: {configuration.probe.device}")
        if configuration.pulse.found:
            lines.append(f"# Pulse: {configuration.pulse.kind.value} {configuration.pulse.path}")
        lines += configuration.to_lines()
        lines.append("hwtimestamp *")
        return "\n".join(lines) + "\n"

    def client_log_limit(self, total_memory: int) -> Optional[int]:
        return client_log_limit(
            total_memory,
            low=self.client_log_low,
            high=self.client_log_high,
            cap=self.client_log_cap,
        )

    def render_server_config(
        self,
        client_log_limit: Optional[int] = None,
        nts_lines: Sequence[str] = (),
    ) -> str:
        """
        Render the NTP server file.

        Args:
            client_log_limit: Bytes for clientloglimit, omitted when None
            nts_lines: ntsservercert/ntsserverkey lines when TLS is enabled
        """
        lines = ["allow"]
        if client_log_limit is not None:
            lines.append(f"clientloglimit {client_log_limit}")
        lines += list(nts_lines)
        return "\n".join(lines) + "\n"


def nts_lines_in(existing: Optional[str]) -> List[str]:
    """NTS certificate lines already present in a server file."""
    if not existing:
        return []
    return [
        line.strip() for line in existing.splitlines()
        if line.strip().startswith(('ntsservercert', 'ntsserverkey'))
    ]
