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

"""EbtablesRuleCompiler: generates ebtables commands for bridge-layer rules.

The arguments of one command are assembled in a fixed order: chain,
ethernet header, protocol specific items, target.  Rules for traffic
from the VM go into the ``J`` chain and rules for traffic to the VM into
the ``P`` chain; an ``inout`` rule is rendered into both, reversed
(source and destination swapped) in the ``J`` chain.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import TYPE_CHECKING, ClassVar

from nwfilterfabrik.compiler._base import BaseCompiler
from nwfilterfabrik.compiler._datatypes import is_true, render
from nwfilterfabrik.core import (
    Command,
    Direction,
    HeaderField,
    Protocol,
    Rule,
    RuleAction,
    ebt,
)
from nwfilterfabrik.platforms._prefixes import HOST_IN_TEMP, HOST_OUT_TEMP
from nwfilterfabrik.platforms.ebtables._chains import (
    MAC_BGA,
    chain_name,
    sub_chain_name,
)

if TYPE_CHECKING:
    from nwfilterfabrik.core import Matcher

F = HeaderField

ETHERTYPE_ARP = 0x0806
ETHERTYPE_RARP = 0x8035
ETHERTYPE_VLAN = 0x8100


@dataclasses.dataclass(frozen=True)
class _Item:
    """One optional ``--option [!] value`` clause.

    ``hi`` turns the value into a ``lo:hi`` range, ``mask`` into
    ``value/mask``.
    """

    field: HeaderField
    option: str
    hi: HeaderField | None = None
    mask: HeaderField | None = None


def _neg(matcher: Matcher) -> list[str]:
    return ['!'] if matcher.negate else []


class EbtablesRuleCompiler(BaseCompiler):
    """Compile bridge-layer rules into ebtables commands."""

    VLAN_ITEMS: ClassVar[tuple[_Item, ...]] = (
        _Item(F.VLAN_ID, '--vlan-id'),
        _Item(F.VLAN_ENCAP, '--vlan-encap'),
    )

    STP_ITEMS: ClassVar[tuple[_Item, ...]] = (
        _Item(F.STP_TYPE, '--stp-type'),
        _Item(F.STP_FLAGS, '--stp-flags'),
        _Item(F.ROOT_PRIORITY, '--stp-root-pri', hi=F.ROOT_PRIORITY_HI),
        _Item(F.ROOT_ADDRESS, '--stp-root-addr', mask=F.ROOT_ADDRESS_MASK),
        _Item(F.ROOT_COST, '--stp-root-cost', hi=F.ROOT_COST_HI),
        _Item(F.SENDER_PRIORITY, '--stp-sender-prio', hi=F.SENDER_PRIORITY_HI),
        _Item(F.SENDER_ADDRESS, '--stp-sender-addr', mask=F.SENDER_ADDRESS_MASK),
        _Item(F.PORT, '--stp-port', hi=F.PORT_HI),
        _Item(F.AGE, '--stp-msg-age', hi=F.AGE_HI),
        _Item(F.MAX_AGE, '--stp-max-age', hi=F.MAX_AGE_HI),
        _Item(F.HELLO_TIME, '--stp-hello-time', hi=F.HELLO_TIME_HI),
        _Item(F.FORWARD_DELAY, '--stp-forward-delay', hi=F.FORWARD_DELAY_HI),
    )

    def __init__(self) -> None:
        super().__init__()
        self._protocol_printers = {
            Protocol.MAC: self._print_mac,
            Protocol.VLAN: self._print_vlan,
            Protocol.STP: self._print_stp,
            Protocol.ARP: self._print_arp,
            Protocol.RARP: self._print_arp,
            Protocol.IP: self._print_ip,
            Protocol.IPV6: self._print_ipv6,
            Protocol.NONE: self._print_none,
        }

    def compile(
        self,
        rule: Rule,
        ifname: str,
        binding: Mapping[str, str],
        chain_suffix: str,
    ) -> list[Command]:
        """Compile *rule* for both legs its direction asks for."""
        commands = []
        if rule.direction in (Direction.OUT, Direction.INOUT):
            commands.append(
                self.create_rule_instance(
                    HOST_IN_TEMP,
                    chain_suffix,
                    rule,
                    ifname,
                    binding,
                    reverse=rule.direction is Direction.INOUT,
                )
            )
        if rule.direction in (Direction.IN, Direction.INOUT):
            commands.append(
                self.create_rule_instance(
                    HOST_OUT_TEMP, chain_suffix, rule, ifname, binding, reverse=False
                )
            )
        return commands

    def create_rule_instance(
        self,
        marker: str,
        chain_suffix: str,
        rule: Rule,
        ifname: str,
        binding: Mapping[str, str],
        reverse: bool,
    ) -> Command:
        """Render one ebtables command of *rule* into the chain for *marker*."""
        printer = self._protocol_printers.get(rule.protocol)
        if printer is None:
            self.error(rule, f"protocol '{rule.protocol}' is not a bridge-layer protocol")
        args = ['-A', chain_name(marker, ifname, chain_suffix)]
        args += printer(rule, binding, reverse)
        args += ['-j', self._target(rule, marker, ifname)]
        return ebt(*args)

    # -- helpers ----------------------------------------------------------

    def _render(self, rule, field, binding, as_hex=False) -> str:
        return render(rule.get(field), binding, as_hex=as_hex)

    def _print_item(self, rule, item: _Item, binding) -> list[str]:
        matcher = rule.get(item.field)
        if matcher is None:
            return []
        value = self._render(rule, item.field, binding)
        if item.hi is not None and rule.has(item.hi):
            value += ':' + self._render(rule, item.hi, binding)
        elif item.mask is not None and rule.has(item.mask):
            value += '/' + self._render(rule, item.mask, binding)
        return [item.option, *_neg(matcher), value]

    def _print_addr(self, rule, field, mask, option, binding, default_mask=None) -> list[str]:
        matcher = rule.get(field)
        if matcher is None:
            return []
        value = self._render(rule, field, binding)
        if rule.has(mask):
            value += '/' + self._render(rule, mask, binding)
        elif default_mask is not None:
            value += '/' + default_mask
        return [option, *_neg(matcher), value]

    def _print_port_range(self, rule, start, end, option, binding) -> list[str]:
        matcher = rule.get(start)
        if matcher is None:
            return []
        value = self._render(rule, start, binding)
        if rule.has(end):
            value += ':' + self._render(rule, end, binding)
        return [option, *_neg(matcher), value]

    def _print_eth_hdr(self, rule, binding, reverse) -> list[str]:
        args = self._print_addr(
            rule, F.SRC_MAC_ADDR, F.SRC_MAC_MASK, '-d' if reverse else '-s', binding
        )
        args += self._print_addr(
            rule, F.DST_MAC_ADDR, F.DST_MAC_MASK, '-s' if reverse else '-d', binding
        )
        return args

    def _target(self, rule, marker, ifname) -> str:
        if rule.action is RuleAction.REJECT:
            return RuleAction.DROP.target
        if rule.action is RuleAction.JUMP:
            return sub_chain_name(marker, ifname, rule.jump_chain)
        return rule.action.target

    # -- per protocol -----------------------------------------------------

    def _print_mac(self, rule, binding, reverse) -> list[str]:
        args = self._print_eth_hdr(rule, binding, reverse)
        matcher = rule.get(F.PROTOCOL_ID)
        if matcher is not None:
            args += ['-p', *_neg(matcher), self._render(rule, F.PROTOCOL_ID, binding, as_hex=True)]
        return args

    def _print_vlan(self, rule, binding, reverse) -> list[str]:
        args = self._print_eth_hdr(rule, binding, reverse)
        args += ['-p', f'0x{ETHERTYPE_VLAN:x}']
        for item in self.VLAN_ITEMS:
            args += self._print_item(rule, item, binding)
        return args

    def _print_stp(self, rule, binding, reverse) -> list[str]:
        if reverse and rule.has(F.SRC_MAC_ADDR):
            self.error(
                rule,
                f'STP filtering in {Direction.INOUT} direction with source MAC '
                f'address set is not supported',
            )
        args = self._print_eth_hdr(rule, binding, reverse)
        args += ['-d', MAC_BGA]
        for item in self.STP_ITEMS:
            args += self._print_item(rule, item, binding)
        return args

    def _print_arp(self, rule, binding, reverse) -> list[str]:
        args = self._print_eth_hdr(rule, binding, reverse)
        ethertype = ETHERTYPE_ARP if rule.protocol is Protocol.ARP else ETHERTYPE_RARP
        args += ['-p', f'0x{ethertype:x}']
        for field, option, as_hex in (
            (F.HW_TYPE, '--arp-htype', False),
            (F.OPCODE, '--arp-opcode', False),
            (F.PROTOCOL_TYPE, '--arp-ptype', True),
        ):
            matcher = rule.get(field)
            if matcher is not None:
                args += [option, *_neg(matcher), self._render(rule, field, binding, as_hex)]
        args += self._print_addr(
            rule,
            F.ARP_SRC_IP_ADDR,
            F.ARP_SRC_IP_MASK,
            '--arp-ip-dst' if reverse else '--arp-ip-src',
            binding,
            default_mask='32',
        )
        args += self._print_addr(
            rule,
            F.ARP_DST_IP_ADDR,
            F.ARP_DST_IP_MASK,
            '--arp-ip-src' if reverse else '--arp-ip-dst',
            binding,
            default_mask='32',
        )
        for field, option, reversed_option in (
            (F.ARP_SRC_MAC_ADDR, '--arp-mac-src', '--arp-mac-dst'),
            (F.ARP_DST_MAC_ADDR, '--arp-mac-dst', '--arp-mac-src'),
        ):
            matcher = rule.get(field)
            if matcher is not None:
                args += [
                    reversed_option if reverse else option,
                    *_neg(matcher),
                    self._render(rule, field, binding),
                ]
        matcher = rule.get(F.GRATUITOUS)
        if matcher is not None and is_true(matcher, binding):
            args += [*_neg(matcher), '--arp-gratuitous']
        return args

    def _print_ip_common(self, rule, binding, reverse, family) -> list[str]:
        prefix = '--ip' if family == 4 else '--ip6'
        args = self._print_eth_hdr(rule, binding, reverse)
        args += ['-p', 'ipv4' if family == 4 else 'ipv6']
        args += self._print_addr(
            rule,
            F.SRC_IP_ADDR,
            F.SRC_IP_MASK,
            f'{prefix}-destination' if reverse else f'{prefix}-source',
            binding,
        )
        args += self._print_addr(
            rule,
            F.DST_IP_ADDR,
            F.DST_IP_MASK,
            f'{prefix}-source' if reverse else f'{prefix}-destination',
            binding,
        )
        matcher = rule.get(F.IP_PROTOCOL)
        if matcher is not None:
            args += [f'{prefix}-protocol', *_neg(matcher), self._render(rule, F.IP_PROTOCOL, binding)]
        args += self._print_port_range(
            rule,
            F.SRC_PORT_START,
            F.SRC_PORT_END,
            f'{prefix}-destination-port' if reverse else f'{prefix}-source-port',
            binding,
        )
        args += self._print_port_range(
            rule,
            F.DST_PORT_START,
            F.DST_PORT_END,
            f'{prefix}-source-port' if reverse else f'{prefix}-destination-port',
            binding,
        )
        return args

    def _print_ip(self, rule, binding, reverse) -> list[str]:
        args = self._print_ip_common(rule, binding, reverse, 4)
        matcher = rule.get(F.DSCP)
        if matcher is not None:
            args += ['--ip-tos', *_neg(matcher), self._render(rule, F.DSCP, binding, as_hex=True)]
        return args

    def _print_ipv6(self, rule, binding, reverse) -> list[str]:
        return self._print_ip_common(rule, binding, reverse, 6)

    def _print_none(self, rule, binding, reverse) -> list[str]:
        return []
