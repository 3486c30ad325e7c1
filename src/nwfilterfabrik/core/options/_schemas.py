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

"""Typed option schema with defaults, and loading from YAML.

The dataclass is the single source of truth for which driver options
exist, their types and their default values.  An options file is a flat
YAML mapping whose keys are :class:`DriverOption` values; keys that are
absent keep their defaults.
"""

import dataclasses
import logging
import pathlib

import yaml

from ._keys import DriverOption

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class DriverDefaults:
    """Default values for the filter driver options."""

    path_ebtables: str = 'ebtables'
    path_iptables: str = 'iptables'
    path_ip6tables: str = 'ip6tables'
    path_firewall_cmd: str = 'firewall-cmd'
    use_firewalld: bool = True
    executor: str = 'auto'
    shell: str = '/bin/sh'
    bridge_nf_call_interval: float = 10.0


DRIVER_DEFAULTS = DriverDefaults()

_EXECUTORS = ('auto', 'batch', 'discrete')


def _coerce(key: DriverOption, value, default):
    if isinstance(default, bool):
        if isinstance(value, str) and value.lower() in ('true', 'false'):
            return value.lower() == 'true'
        if not isinstance(value, bool):
            raise ValueError(f"option '{key}' expects a boolean, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ValueError(f"option '{key}' expects a number, got {value!r}")
        return float(value)
    if not isinstance(value, str) or not value:
        raise ValueError(f"option '{key}' expects a non-empty string, got {value!r}")
    return value


def options_from_mapping(data: dict | None) -> DriverDefaults:
    """Build driver options from a mapping, validating keys and types."""
    if not data:
        return DRIVER_DEFAULTS
    if not isinstance(data, dict):
        raise ValueError('options must be a mapping')
    values = {}
    for raw_key, value in data.items():
        try:
            key = DriverOption(raw_key)
        except ValueError:
            raise ValueError(f"unknown option '{raw_key}'") from None
        values[key.value] = _coerce(key, value, getattr(DRIVER_DEFAULTS, key.value))
    if values.get(DriverOption.EXECUTOR, 'auto') not in _EXECUTORS:
        raise ValueError(
            f"option '{DriverOption.EXECUTOR}' must be one of {', '.join(_EXECUTORS)}"
        )
    return dataclasses.replace(DRIVER_DEFAULTS, **values)


def load_options(path=None) -> DriverDefaults:
    """Load driver options from a YAML file, or return the defaults."""
    if path is None:
        return DRIVER_DEFAULTS
    path = pathlib.Path(path)
    with path.open(encoding='utf-8') as f:
        data = yaml.safe_load(f)
    logger.debug('Loaded driver options from %s', path)
    return options_from_mapping(data)
