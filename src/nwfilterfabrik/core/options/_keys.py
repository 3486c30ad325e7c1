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

"""Canonical driver option key definitions using StrEnum.

The keys double as the attribute names of
:class:`~nwfilterfabrik.core.options.DriverDefaults` and as the keys
accepted in an options YAML file, so a typo is caught at import time
instead of silently being ignored.

Example:
    from nwfilterfabrik.core.options import DriverOption

    opts = load_options(path)
    shell = getattr(opts, DriverOption.SHELL)
"""

from enum import StrEnum


class DriverOption(StrEnum):
    """Option keys of the filter driver."""

    # Tool paths; a bare name is looked up in PATH
    PATH_EBTABLES = 'path_ebtables'
    PATH_IPTABLES = 'path_iptables'
    PATH_IP6TABLES = 'path_ip6tables'
    PATH_FIREWALL_CMD = 'path_firewall_cmd'

    # Passthrough through firewalld when it is running
    USE_FIREWALLD = 'use_firewalld'

    # Execution backend: auto, batch or discrete
    EXECUTOR = 'executor'
    SHELL = 'shell'

    # Seconds between repeated bridge-nf-call warnings
    BRIDGE_NF_CALL_INTERVAL = 'bridge_nf_call_interval'
