"""Data contracts passed between discovery and configuration."""

from .clock_sources import (
    ProbeResult,
    PulseKind,
    PulseReference,
    DirectiveRole,
    RefclockDirective,
    ClockConfiguration,
)

__all__ = [
    'ProbeResult',
    'PulseKind',
    'PulseReference',
    'DirectiveRole',
    'RefclockDirective',
    'ClockConfiguration',
]
