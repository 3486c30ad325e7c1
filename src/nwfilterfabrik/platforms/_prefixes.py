# Copyright (C) 2026 Linuxfabrik <info@linuxfabrik.ch>
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 2 of the License, or
# (at your option) any later version.
#
# On Debian systems, the complete text of the GNU General Public License
# version 2 can be found in /usr/share/common-licenses/GPL-2.
#
# SPDX-License-Identifier: GPL-2.0-or-later

"""Direction/lifecycle markers used in every chain name.

``J``/``P`` mark the temporary generation, ``I``/``O`` the active one.
"Host in" is traffic leaving the VM (entering the host), "host out" is
traffic towards the VM.
"""

HOST_IN_TEMP = 'J'
HOST_OUT_TEMP = 'P'
HOST_IN = 'I'
HOST_OUT = 'O'

TEMP_MARKERS = HOST_IN_TEMP + HOST_OUT_TEMP
ACTIVE_MARKERS = HOST_IN + HOST_OUT

_ACTIVE = {HOST_IN_TEMP: HOST_IN, HOST_OUT_TEMP: HOST_OUT}


def host_marker(incoming: bool, temp: bool) -> str:
    if incoming:
        return HOST_IN_TEMP if temp else HOST_IN
    return HOST_OUT_TEMP if temp else HOST_OUT


def active_marker(marker: str) -> str:
    """Map a temporary marker to its active counterpart."""
    return _ACTIVE[marker]
