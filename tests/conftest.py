"""
Pytest configuration and fixtures for time-server tests.
"""

import pytest
import sys
import time
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


NMEA_GGA = b"$GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,*47\r\n"
GARBAGE = b"\xfe\x1c\x80\x00\xe6\x19\n"


class FakePort:
    """Stands in for serial.Serial; replays canned lines."""

    def __init__(self, lines, timeout=None):
        self.lines = list(lines)
        self.timeout = timeout
        self.closed = False
        self.reads = 0

    def reset_input_buffer(self):
        pass

    def read_until(self, expected=b'\n', size=None):
        self.reads += 1
        if not self.lines:
            return b''
        return self.lines.pop(0)

    def close(self):
        self.closed = True


class BlockingPort(FakePort):
    """A device that never produces data: every read waits out its timeout."""

    def __init__(self, timeout=None):
        super().__init__([], timeout)

    def read_until(self, expected=b'\n', size=None):
        self.reads += 1
        time.sleep(self.timeout)
        return b''


class FakeSerialFactory:
    """
    Records every (path, baud_rate) opened.

    responses maps (path, baud_rate) to a list of lines; any other pair gets
    garbage, as a real device read at the wrong rate would.
    """

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []
        self.ports = []

    def __call__(self, path, baud_rate, timeout):
        self.calls.append((path, baud_rate))
        port = FakePort(self.responses.get((path, baud_rate), [GARBAGE] * 5), timeout)
        self.ports.append(port)
        return port


class FakeGlob:
    """Maps glob patterns to canned path lists."""

    def __init__(self, mapping):
        self.mapping = mapping

    def __call__(self, pattern):
        return list(self.mapping.get(pattern, []))


@pytest.fixture
def nmea_line():
    return NMEA_GGA


@pytest.fixture
def garbage_line():
    return GARBAGE


@pytest.fixture
def baud_rates():
    """Standard candidate rates, fastest first."""
    return [460800, 230400, 115200, 57600, 38400, 19200, 9600, 4800]


@pytest.fixture
def gib():
    return 1024 ** 3
