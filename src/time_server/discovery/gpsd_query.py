"""
Existing-device check against a running gpsd.

gpsctl prints the device gpsd is currently driving, e.g.

    /dev/ttyACM0 identified as a u-blox SW ROM CORE 3.01 ...

If a device path can be pulled out of that output, gpsd already manages a
receiver and the serial scan is skipped (unless forced). Any failure is
treated as "nothing managed", which is the normal state on a first run.
"""

import logging
import re
import subprocess
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Same device families the serial probe scans: USB, ACM, AMA and S ttys
DEVICE_REGEX = r'/dev/[a-zA-Z0-9/]+(USB|ACM|AMA|S)[0-9]+'
DEVICE_PATTERN = re.compile(DEVICE_REGEX)

QUERY_TIMEOUT = 10.0


class GpsctlQuery:
    """Runs gpsctl with a bounded timeout and returns its output."""

    def __init__(self, command: str = 'gpsctl'):
        self.command = command

    def __call__(self, timeout: float = QUERY_TIMEOUT) -> Optional[str]:
        try:
            result = subprocess.run(
                [self.command],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            logger.debug(f"{self.command} not found")
            return None
        except subprocess.TimeoutExpired:
            logger.debug(f"{self.command} timed out after {timeout}s")
            return None

        # gpsctl writes its diagnostics to stderr
        output = (result.stdout or '') + (result.stderr or '')
        logger.debug(f"{self.command} output: {output.strip()}")
        if result.returncode != 0 or not output.strip():
            logger.debug(
                f"{self.command} failed, or produced no output, "
                "or gpsd is not connected to a device."
            )
            return None
        return output


def already_managed(
    query_fn: Callable[[float], Optional[str]],
    timeout: float = QUERY_TIMEOUT,
) -> Optional[str]:
    """
    Ask gpsd whether it already manages a receiver.

    Args:
        query_fn: Called with the timeout; returns free-form text or None
        timeout: Upper bound in seconds for the query

    Returns:
        First device path found in the query output, or None
    """
    logger.info("Checking if gpsd already has a device...")
    try:
        output = query_fn(timeout)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"gpsd query failed: {e}")
        output = None

    match = DEVICE_PATTERN.search(output) if output else None
    if match:
        device = match.group(0)
        logger.info(f"gpsd seems to be managing {device} (according to gpsctl)")
        return device

    logger.info("gpsctl did not clearly indicate an active GPS device managed by gpsd.")
    return None
