"""
Serial GPS Receiver Probe

Scans candidate serial ports for a GPS/GNSS receiver by configuring each
line at a series of baud rates and looking for NMEA sentences.

Search order:
    for pattern in patterns:          /dev/ttyUSB*, /dev/ttyACM*, ...
        for path in sorted(pattern):  /dev/ttyUSB0, /dev/ttyUSB1, ...
            for baud in baud_rates:   460800, 230400, ... 4800

The three levels are flattened into one ordered sequence of (path, baud)
trials and the first trial that yields an NMEA sentence wins. Nothing after
it is opened.

Classification is a syntactic prefix match only:

    ^\\$(BD|GA|GB|GI|GL|GN|GP|GQ)(GGA|RMC|GSA|GSV|VTG|ZDA|TXT)

There is no checksum validation. gpsd re-validates the stream once it is
pointed at the device, so a false positive here is acceptable.

Usage:
    probe = SerialProbe()
    result = probe.probe(DEFAULT_PATTERNS, DEFAULT_BAUD_RATES)
    if result:
        print(result.device, result.baud_rate)
"""

import glob
import logging
import re
import threading
import time
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Union

import serial

from ..interfaces.clock_sources import ProbeResult
from .devices import expand_patterns, is_char_device

logger = logging.getLogger(__name__)


# NMEA talker IDs: BeiDou (BD, GB), Galileo (GA), GLONASS (GL), GPS (GP),
# multi-constellation (GN), NavIC (GI), QZSS (GQ)
NMEA_REGEX = r'^\$(BD|GA|GB|GI|GL|GN|GP|GQ)(GGA|RMC|GSA|GSV|VTG|ZDA|TXT)'
NMEA_PATTERN = re.compile(NMEA_REGEX)

DEFAULT_PATTERNS = ['/dev/ttyUSB*', '/dev/ttyACM*', '/dev/ttyAMA*', '/dev/ttyS*']

# Tried fastest first
DEFAULT_BAUD_RATES = [460800, 230400, 115200, 57600, 38400, 19200, 9600, 4800]

LINE_TIMEOUT = 0.5   # seconds allowed to configure the line
READ_TIMEOUT = 2.0   # seconds allowed to read max_lines
MAX_LINES = 5

# NMEA 0183 caps a sentence at 82 characters; a wrong baud rate produces
# garbage without newlines, so each read is capped well above that.
MAX_LINE_BYTES = 256


def open_serial(path: str, baud_rate: int, timeout: float) -> serial.Serial:
    """Open path as a raw 8N1 line with no flow control at baud_rate."""
    return serial.Serial(
        port=path,
        baudrate=baud_rate,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        xonxoff=False,
        rtscts=False,
        dsrdtr=False,
        timeout=timeout,
        write_timeout=timeout,
    )


class SerialProbe:
    """
    First-match GPS receiver probe.

    The serial factory, glob function and character-device test are
    injectable so the search order can be exercised without hardware.
    """

    def __init__(
        self,
        line_timeout: float = LINE_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
        max_lines: int = MAX_LINES,
        serial_factory: Callable[[str, int, float], object] = open_serial,
        glob_fn: Callable[[str], List[str]] = glob.glob,
        char_device_fn: Callable[[str], bool] = is_char_device,
    ):
        self.line_timeout = line_timeout
        self.read_timeout = read_timeout
        self.max_lines = max_lines
        self.serial_factory = serial_factory
        self.glob_fn = glob_fn
        self.char_device_fn = char_device_fn
        self.trials = 0

    def candidates(self, patterns: Sequence[str]) -> List[str]:
        """Existing character devices matching patterns, in search order."""
        devices = []
        for path in expand_patterns(patterns, self.glob_fn):
            if not self.char_device_fn(path):
                logger.debug(f"Device {path} does not exist or is not a character device, skipping")
                continue
            devices.append(path)
        return devices

    def trial_sequence(
        self,
        patterns: Sequence[str],
        baud_rates: Sequence[int],
    ) -> Iterator[Tuple[str, int]]:
        """Flattened (path, baud_rate) trials in precedence order."""
        for path in self.candidates(patterns):
            logger.debug(f"Testing {path}...")
            for baud_rate in baud_rates:
                yield path, baud_rate

    def probe(
        self,
        patterns: Sequence[str] = DEFAULT_PATTERNS,
        baud_rates: Sequence[int] = DEFAULT_BAUD_RATES,
        sentence_matcher: Union[str, re.Pattern] = NMEA_PATTERN,
    ) -> Optional[ProbeResult]:
        """
        Find the first (device, baud rate) pair that emits NMEA sentences.

        Args:
            patterns: Glob patterns of candidate devices, in priority order
            baud_rates: Rates to try on each device, in priority order
            sentence_matcher: Regex a line must match to count as NMEA

        Returns:
            ProbeResult for the first match, or None if nothing matched
        """
        if isinstance(sentence_matcher, str):
            sentence_matcher = re.compile(sentence_matcher)

        logger.info("Searching for GPS device...")
        self.trials = 0
        for path, baud_rate in self.trial_sequence(patterns, baud_rates):
            self.trials += 1
            logger.debug(f"Trying baud rate {baud_rate} on {path}")
            if self.try_device(path, baud_rate, sentence_matcher):
                logger.debug(f"GPS-like NMEA data found on {path}")
                logger.info(f"GPS receiver found: {path} at {baud_rate} baud")
                return ProbeResult(device=path, baud_rate=baud_rate, confirmed=True)

        logger.info("No GPS receiver detected automatically.")
        return None

    def try_device(self, path: str, baud_rate: int, sentence_matcher: re.Pattern) -> bool:
        """
        Configure one line and check it for NMEA sentences.

        Any failure to configure or read is treated as "not a GPS" so the
        search can move on to the next rate.
        """
        try:
            port = self.open_port(path, baud_rate)
        except (serial.SerialException, OSError, ValueError) as e:
            logger.debug(f"Cannot configure {path} at {baud_rate}: {e}")
            return False
        if port is None:
            logger.debug(f"Configuring {path} took longer than {self.line_timeout}s, skipping rate {baud_rate}")
            return False

        try:
            # Drop anything buffered at the previous rate
            port.reset_input_buffer()
            return self._read_matches(port, sentence_matcher)
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Read from {path} at {baud_rate} failed: {e}")
            return False
        finally:
            try:
                port.close()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"Closing {path} failed: {e}")

    def open_port(self, path: str, baud_rate: int):
        """
        Configure path at baud_rate within line_timeout.

        The factory runs in a daemon thread so a wedged open or tcsetattr
        cannot stall the search. A port that is opened after the deadline
        is closed by that thread.

        Returns:
            The open port, or None if configuring took too long

        Raises:
            Whatever the serial factory raised
        """
        lock = threading.Lock()
        outcome = {}

        def configure():
            try:
                port = self.serial_factory(path, baud_rate, self.line_timeout)
            except Exception as e:
                with lock:
                    outcome['error'] = e
                return
            with lock:
                if not outcome.get('abandoned'):
                    outcome['port'] = port
                    return
            try:
                port.close()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"Closing late port {path} failed: {e}")

        worker = threading.Thread(target=configure, name=f'configure-{path}', daemon=True)
        worker.start()
        worker.join(self.line_timeout)

        with lock:
            if 'error' in outcome:
                raise outcome['error']
            if 'port' not in outcome:
                outcome['abandoned'] = True
                return None
            return outcome['port']

    def _read_matches(self, port, sentence_matcher: re.Pattern) -> bool:
        """Read up to max_lines within read_timeout; True on the first NMEA line."""
        deadline = time.monotonic() + self.read_timeout
        for _ in range(self.max_lines):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            port.timeout = remaining
            raw = port.read_until(b'\n', MAX_LINE_BYTES)
            if not raw:
                # Timed out with nothing received
                break
            line = raw.decode('ascii', errors='replace').rstrip('\r\n')
            if sentence_matcher.search(line):
                return True
        return False
