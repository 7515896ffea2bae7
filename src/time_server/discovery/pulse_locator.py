"""
Pulse Reference Locator

Once a GPS receiver is confirmed, looks for a hardware pulse signal that
chrony can lock to the receiver's coarse NMEA time.

Two strategies, tried in order; the first validated device wins:

1. PPS: /dev/ppsN with /sys/class/pps/ppsN/assert readable, e.g.

       1766780046.098052833#346

   Timestamp and sequence counter separated by '#'. A sequence above zero
   means at least one pulse edge was seen since the source was attached.

2. PHC: /dev/ptpN with /sys/class/ptp/ptpN/fifo whose leading numeric field
   is above zero.

Probing is read-only. Missing or malformed status files mean "not this
device" and never raise.
"""

import glob
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Union

from ..interfaces.clock_sources import PulseReference
from .devices import expand_patterns, is_char_device

logger = logging.getLogger(__name__)

Number = Union[int, float]

PPS_PATTERN = '/dev/pps*'
PPS_STATUS = '/sys/class/pps/{name}/assert'
PPS_SEPARATOR = '#'

PHC_PATTERN = '/dev/ptp*'
PHC_STATUS = '/sys/class/ptp/{name}/fifo'


def parse_number(text: str) -> Optional[Number]:
    """Parse text as int, else float, else None."""
    text = text.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


class PulseStatusReader(ABC):
    """Reads the numeric fields of a pulse device status file."""

    @abstractmethod
    def read_fields(
        self,
        status_path: str,
        separator: Optional[str] = None,
    ) -> Optional[List[Optional[Number]]]:
        """
        Return the parsed fields of status_path.

        Fields are split on separator (whitespace when None). Each field is
        an int, a float, or None if it does not parse. Returns None if the
        file does not exist or cannot be read.
        """


class SysfsPulseStatusReader(PulseStatusReader):
    """PulseStatusReader backed by sysfs files."""

    def read_fields(self, status_path, separator=None):
        try:
            with open(status_path, 'r', encoding='ascii', errors='replace') as f:
                raw = f.readline().strip()
        except OSError as e:
            logger.debug(f"Cannot read {status_path}: {e}")
            return None
        if not raw:
            return []
        return [parse_number(field) for field in raw.split(separator)]


class PulseLocator:
    """
    Finds the highest-priority validated pulse signal.

    Usage:
        locator = PulseLocator()
        pulse = locator.locate('/dev/ttyAMA0')
        if pulse.found:
            print(pulse.kind, pulse.path)
    """

    def __init__(
        self,
        reader: Optional[PulseStatusReader] = None,
        pps_pattern: str = PPS_PATTERN,
        pps_status: str = PPS_STATUS,
        pps_separator: str = PPS_SEPARATOR,
        phc_pattern: str = PHC_PATTERN,
        phc_status: str = PHC_STATUS,
        glob_fn: Callable[[str], List[str]] = glob.glob,
        char_device_fn: Callable[[str], bool] = is_char_device,
    ):
        self.reader = reader or SysfsPulseStatusReader()
        self.pps_pattern = pps_pattern
        self.pps_status = pps_status
        self.pps_separator = pps_separator
        self.phc_pattern = phc_pattern
        self.phc_status = phc_status
        self.glob_fn = glob_fn
        self.char_device_fn = char_device_fn

    def locate(self, after_device: str) -> PulseReference:
        """
        Search for a pulse signal to pair with the receiver on after_device.

        Returns:
            PulseReference.pps(path), PulseReference.phc(path), or
            PulseReference.none() when neither strategy validates a device
        """
        logger.info(f"Looking for a pulse signal to pair with {after_device}...")

        pps = self.find_pps()
        if pps:
            logger.info(f"PPS signal found: {pps}")
            return PulseReference.pps(pps)

        phc = self.find_phc()
        if phc:
            logger.info(f"PTP hardware clock found: {phc}")
            return PulseReference.phc(phc)

        logger.info("No pulse signal found, using NMEA time only")
        return PulseReference.none()

    def find_pps(self) -> Optional[str]:
        """First PPS device whose assert sequence counter is above zero."""
        for path in self._devices(self.pps_pattern):
            status = self._status_path(self.pps_status, path)
            fields = self.reader.read_fields(status, self.pps_separator)
            if not fields or len(fields) < 2:
                logger.debug(f"{path}: no usable status in {status}")
                continue
            sequence = fields[1]
            # bool is an int subclass; a float counter is malformed
            if isinstance(sequence, int) and not isinstance(sequence, bool) and sequence > 0:
                return path
            logger.debug(f"{path}: no pulse edges seen (sequence={sequence})")
        return None

    def find_phc(self) -> Optional[str]:
        """First PHC device whose fifo leading field is above zero."""
        for path in self._devices(self.phc_pattern):
            status = self._status_path(self.phc_status, path)
            fields = self.reader.read_fields(status)
            if not fields:
                logger.debug(f"{path}: no usable status in {status}")
                continue
            leading = fields[0]
            if leading is not None and leading > 0:
                return path
            logger.debug(f"{path}: no external timestamps (leading field={leading})")
        return None

    def _devices(self, pattern: str) -> List[str]:
        return [p for p in expand_patterns([pattern], self.glob_fn) if self.char_device_fn(p)]

    @staticmethod
    def _status_path(template: str, device_path: str) -> str:
        name = device_path.rstrip('/').rsplit('/', 1)[-1]
        return template.format(name=name)
