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

"""Typed option keys and schema for the filter driver.

This module provides:

- **StrEnum keys**: Type-safe option key names
- **Dataclass schema**: Typed defaults for tool paths and driver behaviour
- **Loader**: Reading an options YAML file into the schema

Usage::

    from nwfilterfabrik.core.options import DriverOption, load_options

    opts = load_options('/etc/nwfilterfabrik/options.yml')
    if opts.use_firewalld:
        ...
"""

from nwfilterfabrik.core.options._keys import DriverOption
from nwfilterfabrik.core.options._schemas import (
    DRIVER_DEFAULTS,
    DriverDefaults,
    load_options,
    options_from_mapping,
)

__all__ = [
    'DRIVER_DEFAULTS',
    'DriverDefaults',
    'DriverOption',
    'load_options',
    'options_from_mapping',
]
