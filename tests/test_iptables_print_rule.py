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

"""Unit tests for the iptables rule compiler."""

import dataclasses

import pytest

from nwfilterfabrik.core import (
    CompileError,
    ConnState,
    CtdirStatus,
    Direction,
    HeaderField,
    Layer,
    Matcher,
    Protocol,
    Rule,
    RuleAction,
    StateMatchSyntax,
    datatype_for,
)
from nwfilterfabrik.platforms.iptables import IptablesRuleCompiler

F = HeaderField


def _match(protocol, field, value=None, negate=False, var=None):
    return Matcher(datatype_for(protocol, field), value=value, var=var, negate=negate)


def _texts(commands):
    return [c.text for c in commands]


@pytest.fixture
def compiler(tools):
    return IptablesRuleCompiler(tools)


class TestLegs:
    def test_out_rule_with_destination_port(self, compiler):
        rule = Rule(
            Protocol.TCP,
            Direction.OUT,
            matches={F.DST_PORT_START: _match(Protocol.TCP, F.DST_PORT_START, 80)},
        )
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FJ-vnet0 -p tcp --dport 80 -m state --state NEW,ESTABLISHED -j RETURN',
            '-A FP-vnet0 -p tcp --sport 80 -m state --state ESTABLISHED -j ACCEPT',
            '-A HJ-vnet0 -p tcp --dport 80 -m state --state NEW,ESTABLISHED -j RETURN',
        ]

    def test_in_rule_swaps_addresses(self, compiler):
        rule = Rule(
            Protocol.UDP,
            Direction.IN,
            matches={F.SRC_IP_ADDR: _match(Protocol.UDP, F.SRC_IP_ADDR, '10.0.0.1')},
        )
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FJ-vnet0 -p udp --destination 10.0.0.1 -m state --state ESTABLISHED -j RETURN',
            '-A FP-vnet0 -p udp --source 10.0.0.1 -m state --state NEW,ESTABLISHED -j ACCEPT',
            '-A HJ-vnet0 -p udp --destination 10.0.0.1 -m state --state ESTABLISHED -j RETURN',
        ]

    def test_inout_rule_has_no_state_match(self, compiler):
        rule = Rule(Protocol.ALL, Direction.INOUT)
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FJ-vnet0 -p all -j RETURN',
            '-A FP-vnet0 -p all -j ACCEPT',
            '-A HJ-vnet0 -p all -j RETURN',
        ]

    def test_without_state_match(self, compiler):
        rule = Rule(Protocol.TCP, Direction.OUT, state_match=False)
        assert _texts(compiler.compile(rule, 'vnet0', {}))[0] == '-A FJ-vnet0 -p tcp -j RETURN'

    def test_drop_skips_the_state_match(self, compiler):
        rule = Rule(Protocol.TCP, Direction.OUT, action=RuleAction.DROP)
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FJ-vnet0 -p tcp -j DROP',
            '-A FP-vnet0 -p tcp -j DROP',
            '-A HJ-vnet0 -p tcp -j DROP',
        ]

    def test_ipv6_rule_targets_ip6tables(self, compiler):
        rule = Rule(
            Protocol.TCP_IPV6,
            Direction.OUT,
            state_match=False,
            matches={F.DST_IP_ADDR: _match(Protocol.TCP_IPV6, F.DST_IP_ADDR, '2001:db8::1')},
        )
        commands = compiler.compile(rule, 'vnet0', {})
        assert {c.layer for c in commands} == {Layer.IPV6}
        assert commands[0].text == '-A FJ-vnet0 -p tcp --destination 2001:db8::1 -j RETURN'


class TestStateControl:
    def test_explicit_state_for_outgoing_rule(self, compiler):
        rule = Rule(Protocol.TCP, Direction.OUT, state=frozenset({ConnState.NEW}))
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FJ-vnet0 -p tcp -m state --state NEW -j RETURN',
            '-A HJ-vnet0 -p tcp -m state --state NEW -j RETURN',
        ]

    def test_explicit_state_for_incoming_rule(self, compiler):
        rule = Rule(
            Protocol.TCP,
            Direction.IN,
            state=frozenset({ConnState.NEW, ConnState.ESTABLISHED}),
        )
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FP-vnet0 -p tcp -m state --state NEW,ESTABLISHED -j ACCEPT',
        ]

    def test_explicit_state_ignored_without_state_match(self, compiler):
        rule = Rule(
            Protocol.TCP,
            Direction.IN,
            state_match=False,
            state=frozenset({ConnState.NEW}),
        )
        assert len(compiler.compile(rule, 'vnet0', {})) == 3

    def test_conntrack_syntax(self, tools):
        compiler = IptablesRuleCompiler(
            dataclasses.replace(tools, state_syntax=StateMatchSyntax.NEW)
        )
        rule = Rule(Protocol.TCP, Direction.OUT)
        assert _texts(compiler.compile(rule, 'vnet0', {}))[0] == (
            '-A FJ-vnet0 -p tcp -m conntrack --ctstate NEW,ESTABLISHED -j RETURN'
        )


class TestCtdir:
    @pytest.mark.parametrize(
        ('ctdir', 'expected'),
        [
            (CtdirStatus.CORRECTED, ['Original', 'Reply', 'Original']),
            (CtdirStatus.OLD, ['Reply', 'Original', 'Reply']),
        ],
    )
    def test_direction_follows_kernel_polarity(self, tools, ctdir, expected):
        compiler = IptablesRuleCompiler(dataclasses.replace(tools, ctdir=ctdir))
        commands = compiler.compile(Rule(Protocol.TCP, Direction.OUT), 'vnet0', {})
        directions = [c.args[c.args.index('--ctdir') + 1] for c in commands]
        assert directions == expected

    def test_unknown_polarity_omits_ctdir(self, compiler):
        commands = compiler.compile(Rule(Protocol.TCP, Direction.OUT), 'vnet0', {})
        assert all('--ctdir' not in c.args for c in commands)


class TestMatches:
    def test_source_mac_only_for_traffic_from_the_vm(self, compiler):
        rule = Rule(
            Protocol.TCP,
            Direction.OUT,
            state_match=False,
            matches={F.SRC_MAC_ADDR: _match(Protocol.TCP, F.SRC_MAC_ADDR, '52:54:00:AA:BB:CC')},
        )
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FJ-vnet0 -p tcp -m mac --mac-source 52:54:00:aa:bb:cc -j RETURN',
            '-A HJ-vnet0 -p tcp -m mac --mac-source 52:54:00:aa:bb:cc -j RETURN',
        ]

    def test_address_with_mask_and_negation(self, compiler):
        rule = Rule(
            Protocol.ALL,
            Direction.OUT,
            state_match=False,
            matches={
                F.DST_IP_ADDR: _match(Protocol.ALL, F.DST_IP_ADDR, '10.0.0.0', negate=True),
                F.DST_IP_MASK: _match(Protocol.ALL, F.DST_IP_MASK, '255.0.0.0'),
            },
        )
        command = compiler.compile(rule, 'vnet0', {})[0]
        assert command.text == '-A FJ-vnet0 -p all ! --destination 10.0.0.0/8 -j RETURN'

    def test_address_range(self, compiler):
        rule = Rule(
            Protocol.UDP,
            Direction.OUT,
            state_match=False,
            matches={
                F.SRC_IP_FROM: _match(Protocol.UDP, F.SRC_IP_FROM, '10.0.0.1'),
                F.SRC_IP_TO: _match(Protocol.UDP, F.SRC_IP_TO, '10.0.0.9'),
            },
        )
        command = compiler.compile(rule, 'vnet0', {})[0]
        assert command.text == '-A FJ-vnet0 -p udp -m iprange --src-range 10.0.0.1-10.0.0.9 -j RETURN'

    def test_port_range(self, compiler):
        rule = Rule(
            Protocol.SCTP,
            Direction.OUT,
            state_match=False,
            matches={
                F.SRC_PORT_START: _match(Protocol.SCTP, F.SRC_PORT_START, 1024),
                F.SRC_PORT_END: _match(Protocol.SCTP, F.SRC_PORT_END, 2048),
            },
        )
        command = compiler.compile(rule, 'vnet0', {})[0]
        assert command.text == '-A FJ-vnet0 -p sctp --sport 1024:2048 -j RETURN'

    def test_tcp_flags(self, compiler):
        rule = Rule(
            Protocol.TCP,
            Direction.OUT,
            state_match=False,
            matches={F.TCP_FLAGS: _match(Protocol.TCP, F.TCP_FLAGS, 'SYN,ACK/SYN')},
        )
        command = compiler.compile(rule, 'vnet0', {})[0]
        assert command.text == '-A FJ-vnet0 -p tcp --tcp-flags SYN,ACK SYN -j RETURN'

    def test_icmp_type_only_in_the_rule_direction(self, compiler):
        rule = Rule(
            Protocol.ICMP,
            Direction.OUT,
            matches={
                F.ICMP_TYPE: _match(Protocol.ICMP, F.ICMP_TYPE, 8),
                F.ICMP_CODE: _match(Protocol.ICMP, F.ICMP_CODE, 0),
            },
        )
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FJ-vnet0 -p icmp --icmp-type 8/0 -m state --state NEW,ESTABLISHED -j RETURN',
            '-A HJ-vnet0 -p icmp --icmp-type 8/0 -m state --state NEW,ESTABLISHED -j RETURN',
        ]

    def test_icmpv6_type(self, compiler):
        rule = Rule(
            Protocol.ICMPV6,
            Direction.IN,
            state_match=False,
            matches={F.ICMP_TYPE: _match(Protocol.ICMPV6, F.ICMP_TYPE, 135)},
        )
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FP-vnet0 -p icmpv6 --icmpv6-type 135 -j ACCEPT',
        ]

    def test_connlimit_only_for_connections_from_the_vm(self, compiler):
        rule = Rule(
            Protocol.TCP,
            Direction.OUT,
            action=RuleAction.DROP,
            matches={F.CONNLIMIT_ABOVE: _match(Protocol.TCP, F.CONNLIMIT_ABOVE, 10)},
        )
        assert _texts(compiler.compile(rule, 'vnet0', {})) == [
            '-A FJ-vnet0 -p tcp -m connlimit --connlimit-above 10 -j DROP',
            '-A HJ-vnet0 -p tcp -m connlimit --connlimit-above 10 -j DROP',
        ]

    def test_ipset_follows_the_state_match(self, compiler):
        rule = Rule(
            Protocol.ALL,
            Direction.OUT,
            matches={
                F.IPSET: _match(Protocol.ALL, F.IPSET, 'blocked'),
                F.IPSET_FLAGS: _match(Protocol.ALL, F.IPSET_FLAGS, 'dst'),
            },
        )
        fj, fp, _hj = compiler.compile(rule, 'vnet0', {})
        assert fj.text == (
            '-A FJ-vnet0 -p all -m state --state NEW,ESTABLISHED '
            '-m set --match-set blocked dst -j RETURN'
        )
        assert fp.text == (
            '-A FP-vnet0 -p all -m state --state ESTABLISHED '
            '-m set --match-set blocked src -j ACCEPT'
        )

    def test_comment_is_one_argument(self, compiler):
        rule = Rule(Protocol.ALL, Direction.INOUT, comment="allow 'all' traffic")
        command = compiler.compile(rule, 'vnet0', {})[0]
        assert command.args[-4:] == ('--comment', "allow 'all' traffic", '-j', 'RETURN')

    def test_comment_at_the_limit_is_kept_whole(self, compiler):
        rule = Rule(Protocol.ALL, Direction.INOUT, comment='x' * 256)
        command = compiler.compile(rule, 'vnet0', {})[0]
        assert command.args[-3] == 'x' * 256

    def test_continue_has_no_target(self, compiler):
        rule = Rule(Protocol.ALL, Direction.INOUT, action=RuleAction.CONTINUE)
        command = compiler.compile(rule, 'vnet0', {})[0]
        assert command.args == ('-A', 'FJ-vnet0', '-p', 'all')

    def test_variable_binding(self, compiler):
        rule = Rule(
            Protocol.UDP,
            Direction.OUT,
            state_match=False,
            matches={F.DST_IP_ADDR: _match(Protocol.UDP, F.DST_IP_ADDR, var='DNS')},
        )
        command = compiler.compile(rule, 'vnet0', {'DNS': '10.0.0.53'})[0]
        assert command.text == '-A FJ-vnet0 -p udp --destination 10.0.0.53 -j RETURN'


class TestErrors:
    def test_jump_is_not_supported(self, compiler):
        rule = Rule(Protocol.TCP, Direction.OUT, action=RuleAction.JUMP, jump_chain='mine')
        with pytest.raises(CompileError, match='not supported on the IP layer'):
            compiler.compile(rule, 'vnet0', {})

    def test_overlong_comment(self, compiler):
        rule = Rule(Protocol.TCP, Direction.OUT, comment='x' * 257)
        with pytest.raises(CompileError, match='comment is longer'):
            compiler.compile(rule, 'vnet0', {})

    def test_bridge_layer_protocol(self, compiler):
        with pytest.raises(CompileError, match='not an IP-layer protocol'):
            compiler.compile(Rule(Protocol.ARP, Direction.OUT), 'vnet0', {})
