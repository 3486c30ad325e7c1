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

"""Environment probing: usable tools and version-dependent quirks.

The prober runs once and returns a frozen
:class:`~nwfilterfabrik.core.ToolConfig`.  Tool lookup, process
execution, the kernel release and the firewalld state are all injected,
so probing is testable without touching the host.
"""

from __future__ import annotations

import logging
import platform
import re
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from nwfilterfabrik.core import (
    CtdirStatus,
    EnvironmentWarning,
    ExecutorKind,
    Layer,
    StateMatchSyntax,
    ToolConfig,
    ToolUnavailableError,
)
from nwfilterfabrik.core.options import DRIVER_DEFAULTS, DriverDefaults
from nwfilterfabrik.driver._process import ProcessRunner

logger = logging.getLogger(__name__)

CTDIR_CORRECTED_KERNEL = (2, 6, 39)
CONNTRACK_IPTABLES_VERSION = (1, 4, 16)

_VERSION = re.compile(r'(\d+)\.(\d+)(?:\.(\d+))?')

_PASSTHROUGH = {
    Layer.ETHERNET: 'eb',
    Layer.IPV4: 'ipv4',
    Layer.IPV6: 'ipv6',
}

_SMOKE_TESTS = {
    Layer.ETHERNET: ('-t', 'nat', '-L'),
    Layer.IPV4: ('-n', '-L', 'FORWARD'),
    Layer.IPV6: ('-n', '-L', 'FORWARD'),
}


def parse_version(text: str | None) -> tuple[int, int, int] | None:
    """Return the first ``X.Y[.Z]`` version found in *text*."""
    if not text:
        return None
    m = _VERSION.search(text)
    if not m:
        return None
    return (int(m.group(1)), int(m.group(2)), int(m.group(3) or 0))


def ctdir_status(kernel_release: str | None) -> CtdirStatus:
    """Conntrack direction polarity of a kernel release."""
    version = parse_version(kernel_release)
    if version is None:
        return CtdirStatus.UNKNOWN
    if version >= CTDIR_CORRECTED_KERNEL:
        return CtdirStatus.CORRECTED
    return CtdirStatus.OLD


class EnvironmentProber:
    """Selects the backend tools and probes their quirks."""

    def __init__(
        self,
        runner: ProcessRunner,
        options: DriverDefaults = DRIVER_DEFAULTS,
        which: Callable[[str], str | None] = shutil.which,
        kernel_release: str | None = None,
        firewalld_active: Callable[[], bool] | None = None,
    ) -> None:
        self.runner = runner
        self.options = options
        self.which = which
        self.kernel_release = kernel_release if kernel_release is not None else platform.release()
        self.firewalld_active = firewalld_active

    def _firewall_cmd(self) -> str | None:
        if not self.options.use_firewalld:
            return None
        path = self.which(self.options.path_firewall_cmd)
        if path is None:
            return None
        if self.firewalld_active is not None:
            active = self.firewalld_active()
        else:
            _output, status = self.runner.run([path, '--state'], True)
            active = status == 0
        if not active:
            logger.debug('firewalld is not running, using the tools directly')
            return None
        return path

    def _select_tools(self) -> tuple[dict[Layer, tuple[str, ...]], bool]:
        firewall_cmd = self._firewall_cmd()
        if firewall_cmd is not None:
            logger.debug('Passing commands through %s', firewall_cmd)
            return {
                layer: (firewall_cmd, '--direct', '--passthrough', name)
                for layer, name in _PASSTHROUGH.items()
            }, True

        tools = {}
        for layer, name in (
            (Layer.ETHERNET, self.options.path_ebtables),
            (Layer.IPV4, self.options.path_iptables),
            (Layer.IPV6, self.options.path_ip6tables),
        ):
            path = self.which(name)
            if path is None:
                logger.error('Could not find %s', name)
                continue
            tools[layer] = (path,)
        return tools, False

    def _smoke_test(self, layer: Layer, tool: tuple[str, ...]) -> bool:
        output, status = self.runner.run([*tool, *_SMOKE_TESTS[layer]], True)
        if status != 0:
            logger.error(
                '%s failed its test and will not be used: %s', ' '.join(tool), output.strip()
            )
            return False
        return True

    def _state_syntax(self, tool: tuple[str, ...] | None) -> StateMatchSyntax:
        if tool is None:
            return StateMatchSyntax.OLD
        output, status = self.runner.run([*tool, '--version'], True)
        version = parse_version(output) if status == 0 else None
        if version is None:
            logger.debug('Could not determine the iptables version, using the state match')
            return StateMatchSyntax.OLD
        if version >= CONNTRACK_IPTABLES_VERSION:
            return StateMatchSyntax.NEW
        return StateMatchSyntax.OLD

    def _executor(self, passthrough: bool) -> ExecutorKind:
        forced = ExecutorKind(self.options.executor)
        if forced is not ExecutorKind.AUTO:
            return forced
        return ExecutorKind.DISCRETE if passthrough else ExecutorKind.BATCH

    def probe(self) -> ToolConfig:
        """Return the usable tools and quirks; raise if no tool is usable."""
        candidates, passthrough = self._select_tools()
        usable = {
            layer: tool
            for layer, tool in candidates.items()
            if self._smoke_test(layer, tool)
        }
        if not usable:
            raise ToolUnavailableError('none of ebtables, iptables or ip6tables is usable')

        ip_tool = usable.get(Layer.IPV4) or usable.get(Layer.IPV6)
        config = ToolConfig(
            ebtables=usable.get(Layer.ETHERNET),
            iptables=usable.get(Layer.IPV4),
            ip6tables=usable.get(Layer.IPV6),
            passthrough=passthrough,
            executor=self._executor(passthrough),
            ctdir=ctdir_status(self.kernel_release),
            state_syntax=self._state_syntax(ip_tool),
        )
        logger.debug('Probed environment: %s', config)
        return config


class BridgeNfCallChecker:
    """Warns when bridged traffic bypasses iptables or ip6tables.

    The warning for one IP family is repeated at most once per *interval*
    seconds.
    """

    PROC_DIR = Path('/proc/sys/net/bridge')

    def __init__(
        self,
        interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        proc_dir: Path | None = None,
    ) -> None:
        self.interval = interval
        self.clock = clock
        self.proc_dir = Path(proc_dir) if proc_dir is not None else self.PROC_DIR
        self._last_report: dict[Layer, float] = {}

    def sysctl_path(self, layer: Layer) -> Path:
        family = '6' if layer is Layer.IPV6 else ''
        return self.proc_dir / f'bridge-nf-call-ip{family}tables'

    def check(self, layer: Layer) -> EnvironmentWarning | None:
        now = self.clock()
        last = self._last_report.get(layer)
        if last is not None and now - last < self.interval:
            return None
        path = self.sysctl_path(layer)
        try:
            value = path.read_text(encoding='ascii').strip()
        except OSError as e:
            logger.debug('Cannot read %s: %s', path, e)
            return None
        if value != '0':
            return None
        self._last_report[layer] = now
        family = '6' if layer is Layer.IPV6 else ''
        message = f"To enable ip{family}tables filtering for the VM do 'echo 1 > {path}'"
        logger.warning('%s', message)
        return EnvironmentWarning(message)
