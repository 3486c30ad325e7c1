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

"""Probed host environment: usable tools and version-dependent quirks.

A :class:`ToolConfig` is built once by the environment prober and then
passed to the compilers, executors and the apply engine.  It is frozen so
that it can be shared without further locking.
"""

from __future__ import annotations

import dataclasses
import enum

from ._command import Layer


class CtdirStatus(enum.Enum):
    """Polarity of the kernel's conntrack direction flag."""

    UNKNOWN = 'unknown'
    OLD = 'old'
    CORRECTED = 'corrected'


class StateMatchSyntax(enum.Enum):
    """Connection-state match module understood by the IP-layer tool."""

    OLD = 'state'
    NEW = 'conntrack'


class ExecutorKind(enum.StrEnum):
    AUTO = 'auto'
    BATCH = 'batch'
    DISCRETE = 'discrete'


@dataclasses.dataclass(frozen=True)
class ToolConfig:
    """Usable backend tools and probed quirks.

    Each tool entry is the argument vector that invokes the tool, e.g.
    ``('/usr/sbin/ebtables',)`` or, in passthrough mode,
    ``('/usr/bin/firewall-cmd', '--direct', '--passthrough', 'eb')``.
    ``None`` marks a layer whose tool is unavailable.
    """

    ebtables: tuple[str, ...] | None = None
    iptables: tuple[str, ...] | None = None
    ip6tables: tuple[str, ...] | None = None
    passthrough: bool = False
    executor: ExecutorKind = ExecutorKind.BATCH
    ctdir: CtdirStatus = CtdirStatus.UNKNOWN
    state_syntax: StateMatchSyntax = StateMatchSyntax.OLD

    def tool(self, layer: Layer) -> tuple[str, ...] | None:
        if layer is Layer.ETHERNET:
            return self.ebtables
        if layer is Layer.IPV4:
            return self.iptables
        return self.ip6tables

    def has(self, layer: Layer) -> bool:
        return self.tool(layer) is not None

    @property
    def ip_layers(self) -> tuple[Layer, ...]:
        return tuple(layer for layer in (Layer.IPV4, Layer.IPV6) if self.has(layer))
