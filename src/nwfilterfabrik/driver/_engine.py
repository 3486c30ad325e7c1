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

"""EbiptablesDriver: transactional apply and teardown of interface filters.

The kernel tables have no transactions, so a new rule generation is
built next to the active one under temporary chain names, populated,
linked into the live topology and only then renamed over the previous
generation::

    IDLE -> BUILDING_TEMP -> POPULATING -> LINKING -> IDLE
                                                     (apply_new_rules)
    IDLE -> PROMOTING -> IDLE                        (tear_old_rules)

A failure while building, populating or linking moves to
ROLLING_BACK, which removes everything temporary and leaves the active
generation untouched.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from collections.abc import Iterable, Sequence

from nwfilterfabrik.compiler._compiler import RuleCompiler
from nwfilterfabrik.compiler._datatypes import render_value
from nwfilterfabrik.core import (
    ApplyError,
    Command,
    CompileError,
    DataType,
    EnvironmentWarning,
    ExecutionError,
    Layer,
    RuleInstance,
    ToolConfig,
    ToolUnavailableError,
    ebt,
)
from nwfilterfabrik.core.options import DRIVER_DEFAULTS, DriverDefaults
from nwfilterfabrik.driver._executor import EXEC_LOCK, Executor, create_executor
from nwfilterfabrik.driver._probe import BridgeNfCallChecker, EnvironmentProber
from nwfilterfabrik.driver._process import ProcessRunner, SubprocessRunner
from nwfilterfabrik.driver._scheduler import (
    EthernetSchedule,
    schedule_ethernet,
    sort_rule_instances,
)
from nwfilterfabrik.platforms import ebtables, iptables
from nwfilterfabrik.platforms._prefixes import HOST_IN_TEMP, HOST_OUT_TEMP

logger = logging.getLogger(__name__)

MAC_BROADCAST = 'ff:ff:ff:ff:ff:ff'
DHCP_UDP = ('-p', 'ipv4', '--ip-protocol', 'udp')
DHCP_REQUEST = ('--ip-sport', '68', '--ip-dport', '67')
DHCP_REPLY = ('--ip-sport', '67', '--ip-dport', '68')


class ApplyState(enum.Enum):
    IDLE = 'idle'
    BUILDING_TEMP = 'building-temp'
    POPULATING = 'populating'
    LINKING = 'linking'
    PROMOTING = 'promoting'
    ROLLING_BACK = 'rolling-back'


@dataclasses.dataclass
class ApplyResult:
    """Outcome of a successful apply."""

    ifname: str
    warnings: list[EnvironmentWarning] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class _Generation:
    """Compiled commands of a new generation, before anything is submitted."""

    ethernet: EthernetSchedule
    ip_layers: list[Layer]
    ip_commands: dict[Layer, list[Command]]


class EbiptablesDriver:
    """Applies and tears down ebtables/iptables filters of VM interfaces.

    All public operations hold the process-wide execution lock for their
    whole duration, so operations on different interfaces never
    interleave.
    """

    def __init__(
        self,
        tools: ToolConfig,
        executor: Executor | None = None,
        runner: ProcessRunner | None = None,
        bridge_nf_checker: BridgeNfCallChecker | None = None,
        options: DriverDefaults = DRIVER_DEFAULTS,
    ) -> None:
        self.tools = tools
        if executor is None:
            executor = create_executor(tools, runner or SubprocessRunner(), options.shell)
        self.executor = executor
        self.bridge_nf_checker = bridge_nf_checker or BridgeNfCallChecker(
            options.bridge_nf_call_interval
        )
        self.compiler = RuleCompiler(tools)
        self.state = ApplyState.IDLE

    @classmethod
    def from_environment(
        cls,
        options: DriverDefaults = DRIVER_DEFAULTS,
        runner: ProcessRunner | None = None,
    ) -> EbiptablesDriver:
        """Probe the host and return a driver for the usable tools."""
        runner = runner or SubprocessRunner()
        tools = EnvironmentProber(runner, options).probe()
        return cls(tools, runner=runner, options=options)

    def _transition(self, ifname: str, state: ApplyState) -> None:
        logger.debug('%s: %s -> %s', ifname, self.state.value, state.value)
        self.state = state

    def _submit(self, commands: Sequence[Command]) -> None:
        if commands:
            self.executor.apply(commands)

    # -- building blocks --------------------------------------------------

    def _ebtables_remove_temp(self, ifname: str) -> list[Command]:
        if not self.tools.has(Layer.ETHERNET):
            return []
        return [
            *ebtables.unlink_root_chain(True, ifname, temp=True),
            *ebtables.unlink_root_chain(False, ifname, temp=True),
            *ebtables.remove_tmp_sub_chains(ifname),
            *ebtables.remove_root_chain(True, ifname, temp=True),
            *ebtables.remove_root_chain(False, ifname, temp=True),
        ]

    def _ebtables_remove_active(self, ifname: str) -> list[Command]:
        if not self.tools.has(Layer.ETHERNET):
            return []
        return [
            *ebtables.unlink_root_chain(True, ifname, temp=False),
            *ebtables.unlink_root_chain(False, ifname, temp=False),
            *ebtables.remove_active_sub_chains(ifname),
            *ebtables.remove_root_chain(True, ifname, temp=False),
            *ebtables.remove_root_chain(False, ifname, temp=False),
        ]

    @staticmethod
    def _iptables_remove(layer: Layer, ifname: str, temp: bool) -> list[Command]:
        return [
            *iptables.unlink_root_chains(layer, ifname, temp),
            *iptables.remove_root_chains(layer, ifname, temp),
        ]

    def _compile(self, ifname: str, rules: Iterable[RuleInstance]) -> _Generation:
        ordered = sort_rule_instances(rules)

        def compile_instance(inst: RuleInstance) -> list[Command]:
            return self.compiler.compile_instance(inst, ifname)

        ethernet = schedule_ethernet(ifname, ordered, compile_instance)
        ip_layers = []
        ip_commands: dict[Layer, list[Command]] = {}
        for layer in (Layer.IPV4, Layer.IPV6):
            instances = [inst for inst in ordered if inst.rule.protocol.layer is layer]
            if not instances:
                continue
            ip_layers.append(layer)
            ip_commands[layer] = [
                command for inst in instances for command in compile_instance(inst)
            ]
        return _Generation(ethernet, ip_layers, ip_commands)

    def _rollback(self, ifname: str, ip_layers: Sequence[Layer]) -> None:
        commands = []
        if self.tools.has(Layer.ETHERNET):
            commands += ebtables.unlink_root_chain(True, ifname, temp=True)
            commands += ebtables.unlink_root_chain(False, ifname, temp=True)
        for layer in (Layer.IPV6, Layer.IPV4):
            if layer in ip_layers:
                commands += self._iptables_remove(layer, ifname, temp=True)
        if self.tools.has(Layer.ETHERNET):
            commands += ebtables.remove_tmp_sub_chains(ifname)
            commands += ebtables.remove_root_chain(True, ifname, temp=True)
            commands += ebtables.remove_root_chain(False, ifname, temp=True)
        try:
            self._submit(commands)
        except ExecutionError as e:
            logger.error('%s: rollback did not complete: %s', ifname, e)

    # -- rule generations -------------------------------------------------

    def apply_new_rules(self, ifname: str, rules: Iterable[RuleInstance]) -> ApplyResult:
        """Build, populate and link a temporary generation for *ifname*.

        On failure everything temporary is removed again and
        :class:`~nwfilterfabrik.core.ApplyError` is raised; the active
        generation is never touched.
        """
        with EXEC_LOCK:
            try:
                generation = self._compile(ifname, rules)
            except (CompileError, ToolUnavailableError) as e:
                logger.error('%s: %s', ifname, e)
                raise ApplyError(ifname, str(e)) from e

            chains_in = generation.ethernet.chains_in
            chains_out = generation.ethernet.chains_out
            result = ApplyResult(ifname)
            try:
                self._transition(ifname, ApplyState.BUILDING_TEMP)
                commands = self._ebtables_remove_temp(ifname)
                for layer in generation.ip_layers:
                    commands += self._iptables_remove(layer, ifname, temp=True)
                    commands += iptables.setup_base_chains(layer)
                self._submit(commands)

                commands = []
                if chains_in:
                    commands += ebtables.create_tmp_root_chain(True, ifname)
                if chains_out:
                    commands += ebtables.create_tmp_root_chain(False, ifname)
                for layer in generation.ip_layers:
                    commands += iptables.create_tmp_root_chains(layer, ifname)
                self._submit(commands)

                self._transition(ifname, ApplyState.POPULATING)
                self._submit(generation.ethernet.commands)
                for layer in generation.ip_layers:
                    self._submit(generation.ip_commands[layer])
                    warning = self.bridge_nf_checker.check(layer)
                    if warning is not None:
                        result.warnings.append(warning)

                self._transition(ifname, ApplyState.LINKING)
                commands = []
                for layer in generation.ip_layers:
                    commands += iptables.link_tmp_root_chains(layer, ifname)
                    commands += iptables.setup_virt_in_post(layer, ifname)
                if chains_in:
                    commands += ebtables.link_tmp_root_chain(True, ifname)
                if chains_out:
                    commands += ebtables.link_tmp_root_chain(False, ifname)
                self._submit(commands)
            except (ExecutionError, ToolUnavailableError) as e:
                self._transition(ifname, ApplyState.ROLLING_BACK)
                self._rollback(ifname, generation.ip_layers)
                raise ApplyError(ifname, str(e)) from e
            finally:
                self._transition(ifname, ApplyState.IDLE)
            return result

    def tear_old_rules(self, ifname: str) -> None:
        """Replace the active generation of *ifname* by the temporary one."""
        with EXEC_LOCK:
            self._transition(ifname, ApplyState.PROMOTING)
            try:
                commands = []
                for layer in self.tools.ip_layers:
                    commands += self._iptables_remove(layer, ifname, temp=False)
                    commands += iptables.rename_tmp_root_chains(layer, ifname)
                if self.tools.has(Layer.ETHERNET):
                    commands += self._ebtables_remove_active(ifname)
                    commands += ebtables.rename_tmp_sub_and_root_chains(ifname)
                self._submit(commands)
            finally:
                self._transition(ifname, ApplyState.IDLE)

    def tear_new_rules(self, ifname: str) -> None:
        """Remove the temporary generation of *ifname*."""
        with EXEC_LOCK:
            commands = []
            for layer in self.tools.ip_layers:
                commands += self._iptables_remove(layer, ifname, temp=True)
            commands += self._ebtables_remove_temp(ifname)
            self._submit(commands)

    def apply_policy(self, ifname: str, rules: Iterable[RuleInstance]) -> ApplyResult:
        """Apply *rules* to *ifname* and make them the active generation."""
        with EXEC_LOCK:
            result = self.apply_new_rules(ifname, rules)
            self.tear_old_rules(ifname)
            return result

    def all_teardown(self, ifname: str) -> None:
        """Remove every chain and rule this driver created for *ifname*."""
        with EXEC_LOCK:
            commands = []
            for layer in self.tools.ip_layers:
                commands += iptables.unlink_root_chains(layer, ifname, temp=False)
                commands += iptables.clear_virt_in_post(layer, ifname)
                commands += iptables.remove_root_chains(layer, ifname, temp=False)
                commands += self._iptables_remove(layer, ifname, temp=True)
            commands += self._ebtables_remove_active(ifname)
            commands += self._ebtables_remove_temp(ifname)
            self._submit(commands)

    # -- basic rulesets ---------------------------------------------------

    def can_apply_basic_rules(self) -> bool:
        return self.tools.has(Layer.ETHERNET)

    def _require_ebtables(self) -> None:
        if not self.can_apply_basic_rules():
            raise ToolUnavailableError('cannot apply basic rules since ebtables tool is missing')

    def _clean_all(self, ifname: str) -> None:
        self._submit(self._ebtables_remove_active(ifname) + self._ebtables_remove_temp(ifname))

    def _apply_ebtables(self, ifname: str, commands: Sequence[Command]) -> None:
        try:
            self._submit(commands)
        except ExecutionError as e:
            self._clean_all(ifname)
            raise ApplyError(ifname, str(e)) from e

    def apply_basic_rules(self, ifname: str, mac: str) -> None:
        """Only let the VM send IPv4 and ARP traffic from its own MAC address."""
        self._require_ebtables()
        mac = render_value(DataType.MACADDR, mac)
        with EXEC_LOCK:
            self.all_teardown(ifname)
            chain = ebtables.root_chain_name(HOST_IN_TEMP, ifname)
            commands = [
                *ebtables.create_tmp_root_chain(True, ifname),
                ebt('-A', chain, '-s', '!', mac, '-j', 'DROP'),
                ebt('-A', chain, '-p', 'IPv4', '-j', 'ACCEPT'),
                ebt('-A', chain, '-p', 'ARP', '-j', 'ACCEPT'),
                ebt('-A', chain, '-j', 'DROP'),
                *ebtables.link_tmp_root_chain(True, ifname),
                *ebtables.rename_tmp_root_chain(True, ifname),
            ]
            self._apply_ebtables(ifname, commands)

    def apply_dhcp_only_rules(
        self,
        ifname: str,
        mac: str,
        dhcp_servers: Sequence[str] | None = None,
        leave_temporary: bool = False,
    ) -> None:
        """Only let the VM talk DHCP, optionally restricted to known servers."""
        self._require_ebtables()
        mac = render_value(DataType.MACADDR, mac)
        servers = [render_value(DataType.IPADDR, server) for server in dhcp_servers or ()]
        with EXEC_LOCK:
            self.all_teardown(ifname)
            chain_in = ebtables.root_chain_name(HOST_IN_TEMP, ifname)
            chain_out = ebtables.root_chain_name(HOST_OUT_TEMP, ifname)
            commands = [
                *ebtables.create_tmp_root_chain(True, ifname),
                *ebtables.create_tmp_root_chain(False, ifname),
                ebt('-A', chain_in, '-s', mac, *DHCP_UDP, *DHCP_REQUEST, '-j', 'ACCEPT'),
                ebt('-A', chain_in, '-j', 'DROP'),
            ]
            for server in servers or [None]:
                source = ('--ip-src', server) if server is not None else ()
                for destination in (mac, MAC_BROADCAST):
                    commands.append(
                        ebt(
                            '-A',
                            chain_out,
                            '-d',
                            destination,
                            *DHCP_UDP,
                            *source,
                            *DHCP_REPLY,
                            '-j',
                            'ACCEPT',
                        )
                    )
            commands.append(ebt('-A', chain_out, '-j', 'DROP'))
            commands += ebtables.link_tmp_root_chain(True, ifname)
            commands += ebtables.link_tmp_root_chain(False, ifname)
            if not leave_temporary:
                commands += ebtables.rename_tmp_root_chain(True, ifname)
                commands += ebtables.rename_tmp_root_chain(False, ifname)
            self._apply_ebtables(ifname, commands)

    def apply_drop_all_rules(self, ifname: str) -> None:
        """Cut the VM off the network entirely."""
        self._require_ebtables()
        with EXEC_LOCK:
            self.all_teardown(ifname)
            commands = [
                *ebtables.create_tmp_root_chain(True, ifname),
                *ebtables.create_tmp_root_chain(False, ifname),
                ebt('-A', ebtables.root_chain_name(HOST_IN_TEMP, ifname), '-j', 'DROP'),
                ebt('-A', ebtables.root_chain_name(HOST_OUT_TEMP, ifname), '-j', 'DROP'),
                *ebtables.link_tmp_root_chain(True, ifname),
                *ebtables.link_tmp_root_chain(False, ifname),
                *ebtables.rename_tmp_root_chain(True, ifname),
                *ebtables.rename_tmp_root_chain(False, ifname),
            ]
            self._apply_ebtables(ifname, commands)

    def remove_basic_rules(self, ifname: str) -> None:
        """Remove the bridge-layer chains of *ifname*, active and temporary."""
        with EXEC_LOCK:
            self._clean_all(ifname)
