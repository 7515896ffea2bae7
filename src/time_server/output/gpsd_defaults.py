"""Rewrites the receiver settings in /etc/default/gpsd."""

import re
from typing import Optional

DEFAULTS_FILE = '/etc/default/gpsd'

_DEVICES_LINE = re.compile(r'^DEVICES=.*$', re.MULTILINE)
_OPTIONS_LINE = re.compile(r'^GPSD_OPTIONS=.*$', re.MULTILINE)


def gpsd_options(baud_rate: int) -> str:
    # -n: poll the receiver without waiting for a client
    # -s: fix the line speed found by the probe
    return f"-n -s {baud_rate}"


def render_gpsd_defaults(existing: Optional[str], device: str, baud_rate: int) -> str:
    """
    Point gpsd at device and fix its line speed.

    Existing DEVICES= and GPSD_OPTIONS= lines are replaced in place; missing
    ones are appended. Every other line is kept as is.
    """
    text = existing or ""
    devices = f'DEVICES="{device}"'
    options = f'GPSD_OPTIONS="{gpsd_options(baud_rate)}"'

    for pattern, line in ((_DEVICES_LINE, devices), (_OPTIONS_LINE, options)):
        if pattern.search(text):
            text = pattern.sub(lambda _m: line, text)
        else:
            if text and not text.endswith("\n"):
                text += "\n"
            text += line + "\n"
    return text
