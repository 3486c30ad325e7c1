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

"""IptablesRuleCompiler: generates iptables/ip6tables commands for IP-layer rules.

A rule is rendered into up to three legs, one per root chain:

- ``FJ``: forwarded traffic from the VM, accepted traffic returns to
  the base chain;
- ``FP``: forwarded traffic to the VM, rendered with the opposite
  direction and accepted outright;
- ``HJ``: traffic from the VM to the host.

Within one command the clauses follow a fixed order: protocol, source
MAC, IP header, protocol specific items, connection state, conntrack
direction, deferred matches (ipset, connlimit, comment) and the target.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping

from nwfilterfabrik.compiler._base import BaseCompiler
from nwfilterfabrik.compiler._datatypes import (
    format_state_flags,
    render,
    render_tcp_flags,
)
from nwfilterfabrik.core import (
    Command,
    CtdirStatus,
    Direction,
    HeaderField,
    Protocol,
    Rule,
    RuleAction,
    StateMatchSyntax,
    ToolConfig,
    ipt,
)
from nwfilterfabrik.platforms._prefixes import HOST_IN_TEMP, HOST_OUT_TEMP
from nwfilterfabrik.platforms.iptables._chains import (
    FORWARD_PREFIX,
    HOST_PREFIX,
    root_chain_name,
)

F = HeaderField

MAX_COMMENT_LENGTH = 256

STATE_OUT = 'NEW,ESTABLISHED'
STATE_IN = 'ESTABLISHED'

_PROTOCOL_NAMES = {
    Protocol.TCP: 'tcp',
    Protocol.TCP_IPV6: 'tcp',
    Protocol.UDP: 'udp',
    Protocol.UDP_IPV6: 'udp',
    Protocol.UDPLITE: 'udplite',
    Protocol.UDPLITE_IPV6: 'udplite',
    Protocol.ESP: 'esp',
    Protocol.ESP_IPV6: 'esp',
    Protocol.AH: 'ah',
    Protocol.AH_IPV6: 'ah',
    Protocol.SCTP: 'sctp',
    Protocol.SCTP_IPV6: 'sctp',
    Protocol.ICMP: 'icmp',
    Protocol.ICMPV6: 'icmpv6',
    Protocol.IGMP: 'igmp',
    Protocol.ALL: 'all',
    Protocol.ALL_IPV6: 'all',
}

_PORT_PROTOCOLS = frozenset(
    {
        Protocol.TCP,
        Protocol.TCP_IPV6,
        Protocol.UDP,
        Protocol.UDP_IPV6,
        Protocol.SCTP,
        Protocol.SCTP_IPV6,
    }
)


@dataclasses.dataclass(frozen=True)
class Leg:
    """One root chain a rule is rendered into, and how."""

    prefix: str
    marker: str
    direction_in: bool
    match: tuple[str, ...] | None
    default_match: bool
    accept_target: str
    may_skip_icmp: bool


@dataclasses.dataclass
class _LegState:
    after_state: list[str] = dataclasses.field(default_factory=list)
    src_mac_skipped: bool = False
    skip_rule: bool = False
    skip_match: bool = False
    has_icmp_type: bool = False


def _neg(matcher) -> list[str]:
    return ['!'] if matcher.negate else []


class IptablesRuleCompiler(BaseCompiler):
    """Compile IP-layer rules into iptables or ip6tables commands."""

    def __init__(self, tools: ToolConfig) -> None:
        super().__init__()
        self.tools = tools

    def state_match(self, states: str) -> tuple[str, ...]:
        if self.tools.state_syntax is StateMatchSyntax.NEW:
            return ('-m', 'conntrack', '--ctstate', states)
        return ('-m', 'state', '--state', states)

    def legs(self, rule: Rule) -> list[Leg]:
        """Return the legs *rule* is rendered into, in FJ, FP, HJ order."""
        direction_in = rule.direction in (Direction.IN, Direction.INOUT)
        inout = rule.direction is Direction.INOUT
        if rule.state_match and rule.state is not None:
            return self._state_ctrl_legs(rule, direction_in, inout)

        need_state = rule.state_match and not inout
        inbound = self.state_match(STATE_IN) if need_state else None
        outbound = self.state_match(STATE_OUT) if need_state else None
        return [
            Leg(
                FORWARD_PREFIX,
                HOST_IN_TEMP,
                direction_in,
                inbound if direction_in else outbound,
                True,
                RuleAction.RETURN.target,
                direction_in or inout,
            ),
            Leg(
                FORWARD_PREFIX,
                HOST_OUT_TEMP,
                not direction_in,
                outbound if direction_in else inbound,
                True,
                RuleAction.ACCEPT.target,
                not direction_in or inout,
            ),
            Leg(
                HOST_PREFIX,
                HOST_IN_TEMP,
                direction_in,
                inbound if direction_in else outbound,
                True,
                RuleAction.RETURN.target,
                direction_in,
            ),
        ]

    def _state_ctrl_legs(self, rule: Rule, direction_in: bool, inout: bool) -> list[Leg]:
        """Legs of a rule with an explicit connection state set.

        Only the legs that see traffic in the rule's own direction are
        created; they carry the state set instead of the automatic match.
        """
        match = ('-m', 'state', '--state', format_state_flags(rule.state))
        legs = []
        if not direction_in or inout:
            legs.append(
                Leg(
                    FORWARD_PREFIX,
                    HOST_IN_TEMP,
                    direction_in,
                    match,
                    False,
                    RuleAction.RETURN.target,
                    direction_in or inout,
                )
            )
        if direction_in:
            legs.append(
                Leg(
                    FORWARD_PREFIX,
                    HOST_OUT_TEMP,
                    not direction_in,
                    match,
                    False,
                    RuleAction.ACCEPT.target,
                    not direction_in or inout,
                )
            )
        if not direction_in or inout:
            legs.append(
                Leg(
                    HOST_PREFIX,
                    HOST_IN_TEMP,
                    direction_in,
                    match,
                    False,
                    RuleAction.RETURN.target,
                    direction_in,
                )
            )
        return legs

    def compile(
        self,
        rule: Rule,
        ifname: str,
        binding: Mapping[str, str],
        chain_suffix: str | None = None,
    ) -> list[Command]:
        """Compile *rule* into the commands of all its legs."""
        if rule.action is RuleAction.JUMP:
            self.error(rule, 'jumping into sub-chains is not supported on the IP layer')
        if rule.comment is not None and len(rule.comment) > MAX_COMMENT_LENGTH:
            self.error(rule, f'comment is longer than {MAX_COMMENT_LENGTH} characters')
        commands = []
        for leg in self.legs(rule):
            command = self.create_rule_instance(leg, rule, ifname, binding)
            if command is not None:
                commands.append(command)
        return commands

    def create_rule_instance(
        self,
        leg: Leg,
        rule: Rule,
        ifname: str,
        binding: Mapping[str, str],
    ) -> Command | None:
        """Render *rule* for one *leg*; ``None`` when the leg does not apply."""
        name = _PROTOCOL_NAMES.get(rule.protocol)
        if name is None:
            self.error(rule, f"protocol '{rule.protocol}' is not an IP-layer protocol")
        chain = root_chain_name(leg.prefix, leg.marker, ifname)
        args = ['-A', chain, '-p', name]
        used = len(args)
        state = _LegState()
        direction_in = leg.direction_in

        args += self._print_src_mac(rule, binding, direction_in, state)
        args += self._print_ip_hdr(rule, binding, direction_in, state)
        if rule.has(F.TCP_FLAGS):
            matcher = rule.get(F.TCP_FLAGS)
            value = matcher.value if matcher.var is None else render(matcher, binding)
            args += [*_neg(matcher), '--tcp-flags', *render_tcp_flags(value)]
        if rule.protocol in _PORT_PROTOCOLS:
            args += self._print_ports(rule, binding, direction_in)
        if rule.has(F.TCP_OPTION):
            matcher = rule.get(F.TCP_OPTION)
            args += [*_neg(matcher), '--tcp-option', render(matcher, binding)]
        if rule.has(F.ICMP_TYPE):
            state.has_icmp_type = True
            if leg.may_skip_icmp:
                return None
            matcher = rule.get(F.ICMP_TYPE)
            option = '--icmp-type' if rule.protocol is Protocol.ICMP else '--icmpv6-type'
            value = render(matcher, binding)
            if rule.has(F.ICMP_CODE):
                value += '/' + render(rule.get(F.ICMP_CODE), binding)
            args += [*_neg(matcher), option, value]

        if (state.src_mac_skipped and len(args) == used) or state.skip_rule:
            return None

        if rule.action is RuleAction.ACCEPT:
            target = leg.accept_target
        else:
            target = rule.action.target
            state.skip_match = leg.default_match

        if leg.match and not state.skip_match:
            args += leg.match
            if leg.default_match and not state.has_icmp_type:
                args += self._print_ctdir(rule, direction_in)

        args += state.after_state
        if rule.action is not RuleAction.CONTINUE:
            args += ['-j', target]
        return ipt(rule.protocol.layer, *args)

    def _print_src_mac(self, rule, binding, direction_in, state) -> list[str]:
        matcher = rule.get(F.SRC_MAC_ADDR)
        if matcher is None:
            return []
        if direction_in:
            state.src_mac_skipped = True
            return []
        return ['-m', 'mac', *_neg(matcher), '--mac-source', render(matcher, binding)]

    def _print_ip_hdr(self, rule, binding, direction_in, state) -> list[str]:
        src, dst = '--source', '--destination'
        src_range, dst_range = '--src-range', '--dst-range'
        if direction_in:
            src, dst = dst, src
            src_range, dst_range = dst_range, src_range
        args = []

        if rule.has(F.IPSET) and rule.has(F.IPSET_FLAGS):
            state.after_state += [
                '-m',
                'set',
                '--match-set',
                render(rule.get(F.IPSET), binding),
                render(rule.get(F.IPSET_FLAGS), binding, direction_in=direction_in),
            ]

        for addr, mask, start, end, option, range_option in (
            (F.SRC_IP_ADDR, F.SRC_IP_MASK, F.SRC_IP_FROM, F.SRC_IP_TO, src, src_range),
            (F.DST_IP_ADDR, F.DST_IP_MASK, F.DST_IP_FROM, F.DST_IP_TO, dst, dst_range),
        ):
            if rule.has(addr):
                matcher = rule.get(addr)
                value = render(matcher, binding)
                if rule.has(mask):
                    value += '/' + render(rule.get(mask), binding)
                args += [*_neg(matcher), option, value]
            elif rule.has(start):
                matcher = rule.get(start)
                value = render(matcher, binding)
                if rule.has(end):
                    value += '-' + render(rule.get(end), binding)
                args += ['-m', 'iprange', *_neg(matcher), range_option, value]

        if rule.has(F.DSCP):
            matcher = rule.get(F.DSCP)
            args += ['-m', 'dscp', *_neg(matcher), '--dscp', render(matcher, binding)]

        if rule.has(F.CONNLIMIT_ABOVE):
            if direction_in:
                # connlimit only counts connections opened by the VM
                state.skip_rule = True
            else:
                matcher = rule.get(F.CONNLIMIT_ABOVE)
                state.after_state += [
                    '-m',
                    'connlimit',
                    *_neg(matcher),
                    '--connlimit-above',
                    render(matcher, binding),
                ]
                state.skip_match = True

        if rule.comment is not None:
            state.after_state += ['-m', 'comment', '--comment', rule.comment]
        return args

    def _print_ports(self, rule, binding, direction_in) -> list[str]:
        sport, dport = ('--dport', '--sport') if direction_in else ('--sport', '--dport')
        args = []
        for start, end, option in (
            (F.SRC_PORT_START, F.SRC_PORT_END, sport),
            (F.DST_PORT_START, F.DST_PORT_END, dport),
        ):
            matcher = rule.get(start)
            if matcher is None:
                continue
            value = render(matcher, binding)
            if rule.has(end):
                value += ':' + render(rule.get(end), binding)
            args += [*_neg(matcher), option, value]
        return args

    def _print_ctdir(self, rule, direction_in) -> list[str]:
        match self.tools.ctdir:
            case CtdirStatus.UNKNOWN:
                return []
            case CtdirStatus.CORRECTED:
                direction_in = not direction_in
        if rule.direction is Direction.INOUT:
            return []
        return ['-m', 'conntrack', '--ctdir', 'Original' if direction_in else 'Reply']
