"""
Clock Source Data Models

These dataclasses carry the results of device discovery into the chrony
configurator. They are rebuilt from scratch on every run; nothing here is
persisted except through the rendered configuration text.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class PulseKind(str, Enum):
    """Kind of auxiliary pulse signal found next to the GPS receiver."""
    NONE = "NONE"   # No usable pulse signal
    PPS = "PPS"     # Kernel PPS character device (/dev/ppsN)
    PHC = "PHC"     # PTP hardware clock with external timestamps (/dev/ptpN)


class DirectiveRole(str, Enum):
    """Selection role of a refclock directive."""
    PREFERRED = "prefer trust"
    NOSELECT = "noselect"


@dataclass(frozen=True)
class ProbeResult:
    """
    A serial device confirmed to emit NMEA sentences.

    baud_rate is the rate the probe succeeded at. It is None when the device
    was adopted from gpsd, which then owns the line speed.
    """
    device: str
    baud_rate: Optional[int]
    confirmed: bool = True


@dataclass(frozen=True)
class PulseReference:
    """Highest-priority pulse signal found, if any."""
    kind: PulseKind = PulseKind.NONE
    path: Optional[str] = None

    def __post_init__(self):
        if self.kind == PulseKind.NONE and self.path is not None:
            raise ValueError("PulseReference NONE cannot carry a path")
        if self.kind != PulseKind.NONE and not self.path:
            raise ValueError(f"PulseReference {self.kind.value} requires a path")

    @classmethod
    def none(cls) -> "PulseReference":
        return cls()

    @classmethod
    def pps(cls, path: str) -> "PulseReference":
        return cls(PulseKind.PPS, path)

    @classmethod
    def phc(cls, path: str) -> "PulseReference":
        return cls(PulseKind.PHC, path)

    @property
    def found(self) -> bool:
        return self.kind != PulseKind.NONE


@dataclass(frozen=True)
class RefclockDirective:
    """
    One chrony 'refclock' line.

    Rendered as:
        refclock <driver> <parameter> [lock <lock>] refid <refid> <options> <role>
    """
    driver: str                          # "SHM", "PPS", "PHC"
    parameter: str                       # SHM unit or device path
    refid: str
    role: DirectiveRole
    lock: Optional[str] = None           # refid of the coarse source a pulse is locked to
    options: str = "poll 0"

    def render(self) -> str:
        parts = ["refclock", self.driver, self.parameter]
        if self.lock:
            parts += ["lock", self.lock]
        parts += ["refid", self.refid]
        if self.options:
            parts.append(self.options)
        parts.append(self.role.value)
        return " ".join(parts)


@dataclass
class ClockConfiguration:
    """
    Ordered refclock directives derived from one probe/pulse pair.

    Always holds exactly one SHM directive. A pulse directive is present only
    when a pulse reference was found and is then listed first.
    """
    directives: List[RefclockDirective] = field(default_factory=list)
    probe: Optional[ProbeResult] = None
    pulse: PulseReference = field(default_factory=PulseReference.none)

    @property
    def coarse(self) -> RefclockDirective:
        return next(d for d in self.directives if d.driver == "SHM")

    @property
    def preferred(self) -> RefclockDirective:
        return next(d for d in self.directives if d.role == DirectiveRole.PREFERRED)

    def to_lines(self) -> List[str]:
        return [d.render() for d in self.directives]
