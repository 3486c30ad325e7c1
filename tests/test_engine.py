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

"""Apply and teardown sequences of the driver against in-memory tables."""

import dataclasses

import pytest

from nwfilterfabrik.core import (
    ApplyError,
    CompileError,
    Direction,
    HeaderField,
    Matcher,
    Protocol,
    Rule,
    RuleAction,
    RuleInstance,
    ToolUnavailableError,
    datatype_for,
)
from nwfilterfabrik.driver import ApplyState, BridgeNfCallChecker, DiscreteRuleExecutor, EbiptablesDriver

F = HeaderField
MAC = '52:54:00:aa:bb:cc'


def _match(protocol, field, value):
    return Matcher(datatype_for(protocol, field), value=value)


def _web_rule():
    return RuleInstance(
        Rule(
            Protocol.TCP,
            Direction.OUT,
            matches={F.DST_PORT_START: _match(Protocol.TCP, F.DST_PORT_START, 80)},
        )
    )


def _bridge_rules():
    return [
        RuleInstance(
            Rule(
                Protocol.ARP,
                Direction.INOUT,
                matches={F.ARP_SRC_MAC_ADDR: _match(Protocol.ARP, F.ARP_SRC_MAC_ADDR, MAC)},
            ),
            chain_suffix='arp',
        ),
        RuleInstance(
            Rule(
                Protocol.MAC,
                Direction.OUT,
                matches={F.SRC_MAC_ADDR: _match(Protocol.MAC, F.SRC_MAC_ADDR, MAC)},
                action=RuleAction.DROP,
                priority=-1000,
            ),
        ),
        RuleInstance(Rule(Protocol.NONE, Direction.INOUT, action=RuleAction.DROP, priority=1000)),
    ]


def _interface_chains(netfilter, ifname='vnet0'):
    return {
        tool: [chain for chain in netfilter.user_chains(tool) if ifname in chain]
        for tool in ('ebtables', 'iptables', 'ip6tables')
    }


class TestApplyPolicy:
    def test_ip_rules(self, driver, netfilter):
        result = driver.apply_policy('vnet0', [_web_rule()])
        assert result.ifname == 'vnet0'
        assert result.warnings == []
        ipt = netfilter.chains('iptables')
        assert ipt['FORWARD'] == [
            ('-j', 'libvirt-in'),
            ('-j', 'libvirt-out'),
            ('-j', 'libvirt-in-post'),
        ]
        assert ipt['INPUT'] == [('-j', 'libvirt-host-in')]
        assert ipt['libvirt-out'] == [
            ('-m', 'physdev', '--physdev-is-bridged', '--physdev-out', 'vnet0', '-g', 'FO-vnet0'),
        ]
        assert ipt['libvirt-in'] == [('-m', 'physdev', '--physdev-in', 'vnet0', '-g', 'FI-vnet0')]
        assert ipt['libvirt-in-post'] == [
            ('-m', 'physdev', '--physdev-in', 'vnet0', '-j', 'ACCEPT'),
        ]
        assert ipt['FI-vnet0'] == [
            ('-p', 'tcp', '--dport', '80', '-m', 'state', '--state', 'NEW,ESTABLISHED', '-j', 'RETURN'),
        ]
        assert ipt['FO-vnet0'] == [
            ('-p', 'tcp', '--sport', '80', '-m', 'state', '--state', 'ESTABLISHED', '-j', 'ACCEPT'),
        ]
        assert ipt['HI-vnet0'] == ipt['FI-vnet0']
        assert _interface_chains(netfilter) == {
            'ebtables': [],
            'iptables': ['FI-vnet0', 'FO-vnet0', 'HI-vnet0'],
            'ip6tables': [],
        }
        assert driver.state is ApplyState.IDLE

    def test_bridge_rules(self, driver, netfilter):
        driver.apply_policy('vnet0', _bridge_rules())
        ebt = netfilter.chains('ebtables')
        assert ebt['PREROUTING'] == [('-i', 'vnet0', '-j', 'libvirt-I-vnet0')]
        assert ebt['POSTROUTING'] == [('-o', 'vnet0', '-j', 'libvirt-O-vnet0')]
        assert ebt['libvirt-I-vnet0'] == [
            ('-s', MAC, '-j', 'DROP'),
            ('-p', '0x0806', '-j', 'I-vnet0-arp'),
            ('-j', 'DROP'),
        ]
        assert ebt['libvirt-O-vnet0'] == [
            ('-p', '0x0806', '-j', 'O-vnet0-arp'),
            ('-j', 'DROP'),
        ]
        assert ebt['I-vnet0-arp'] == [('-p', '0x806', '--arp-mac-dst', MAC, '-j', 'ACCEPT')]
        assert ebt['O-vnet0-arp'] == [('-p', '0x806', '--arp-mac-src', MAC, '-j', 'ACCEPT')]
        assert _interface_chains(netfilter)['ebtables'] == [
            'I-vnet0-arp',
            'O-vnet0-arp',
            'libvirt-I-vnet0',
            'libvirt-O-vnet0',
        ]

    def test_reapply_is_idempotent(self, driver, netfilter):
        rules = [_web_rule(), *_bridge_rules()]
        driver.apply_policy('vnet0', rules)
        first = netfilter.snapshot()
        driver.apply_policy('vnet0', rules)
        assert netfilter.snapshot() == first

    def test_new_rules_replace_the_old_ones(self, driver, netfilter):
        driver.apply_policy('vnet0', [_web_rule(), *_bridge_rules()])
        driver.apply_policy('vnet0', _bridge_rules()[2:])
        assert _interface_chains(netfilter) == {
            'ebtables': ['libvirt-I-vnet0', 'libvirt-O-vnet0'],
            'iptables': [],
            'ip6tables': [],
        }
        assert netfilter.chains('ebtables')['libvirt-I-vnet0'] == [('-j', 'DROP')]

    def test_interfaces_are_independent(self, driver, netfilter):
        driver.apply_policy('vnet0', [_web_rule()])
        driver.apply_policy('vnet1', [_web_rule()])
        driver.all_teardown('vnet0')
        assert _interface_chains(netfilter, 'vnet1')['iptables'] == ['FI-vnet1', 'FO-vnet1', 'HI-vnet1']
        assert netfilter.chains('iptables')['libvirt-in-post'] == [
            ('-m', 'physdev', '--physdev-in', 'vnet1', '-j', 'ACCEPT'),
        ]

    def test_misplaced_base_chain_is_moved(self, driver, netfilter):
        netfilter.run(['iptables', '-A', 'FORWARD', '-j', 'ACCEPT'])
        netfilter.run(['iptables', '-N', 'libvirt-in'])
        netfilter.run(['iptables', '-A', 'FORWARD', '-j', 'libvirt-in'])
        driver.apply_policy('vnet0', [_web_rule()])
        assert netfilter.chains('iptables')['FORWARD'] == [
            ('-j', 'libvirt-in'),
            ('-j', 'libvirt-out'),
            ('-j', 'libvirt-in-post'),
            ('-j', 'ACCEPT'),
        ]


class TestTwoPhaseApply:
    def test_new_rules_stay_temporary_until_promoted(self, driver, netfilter):
        driver.apply_new_rules('vnet0', [_web_rule(), *_bridge_rules()])
        chains = _interface_chains(netfilter)
        assert chains['iptables'] == ['FJ-vnet0', 'FP-vnet0', 'HJ-vnet0']
        assert 'libvirt-J-vnet0' in chains['ebtables']
        assert netfilter.chains('ebtables')['PREROUTING'] == [('-i', 'vnet0', '-j', 'libvirt-J-vnet0')]

        driver.tear_old_rules('vnet0')
        chains = _interface_chains(netfilter)
        assert chains['iptables'] == ['FI-vnet0', 'FO-vnet0', 'HI-vnet0']
        assert 'libvirt-I-vnet0' in chains['ebtables']

    def test_old_and_new_generation_coexist_until_promotion(self, driver, netfilter):
        driver.apply_policy('vnet0', [_web_rule()])
        driver.apply_new_rules('vnet0', [_web_rule()])
        assert _interface_chains(netfilter)['iptables'] == [
            'FI-vnet0',
            'FJ-vnet0',
            'FO-vnet0',
            'FP-vnet0',
            'HI-vnet0',
            'HJ-vnet0',
        ]
        assert len(netfilter.chains('iptables')['libvirt-out']) == 2

    def test_tear_new_rules_keeps_the_active_generation(self, driver, netfilter):
        driver.apply_policy('vnet0', [_web_rule(), *_bridge_rules()])
        active = netfilter.snapshot()
        driver.apply_new_rules('vnet0', [_web_rule(), *_bridge_rules()[2:]])
        driver.tear_new_rules('vnet0')
        assert netfilter.snapshot() == active


HOOKS = {
    'ebtables': ('PREROUTING', 'POSTROUTING'),
    'iptables': ('libvirt-in', 'libvirt-out', 'libvirt-host-in'),
    'ip6tables': ('libvirt-in', 'libvirt-out', 'libvirt-host-in'),
}


def _expand(table, rule):
    """Replace every jump into a user chain by the rules of that chain."""
    for i, word in enumerate(rule[:-1]):
        if word in ('-j', '-g') and rule[i + 1] in table:
            target = tuple(_expand(table, r) for r in table[rule[i + 1]])
            return (*rule[: i + 1], target, *rule[i + 2 :])
    return rule


def _effective_filters(tables, ifname='vnet0'):
    """What a packet of *ifname* traverses, independent of chain names.

    Per hook, the first rule matching the interface wins.
    """
    filters = {}
    for tool, hooks in HOOKS.items():
        table = tables[tool]
        for hook in hooks:
            rule = next((r for r in table.get(hook, []) if ifname in r), None)
            filters[tool, hook] = _expand(table, rule) if rule is not None else None
    return filters


def _second_generation():
    return [
        RuleInstance(
            Rule(
                Protocol.TCP,
                Direction.OUT,
                matches={F.DST_PORT_START: _match(Protocol.TCP, F.DST_PORT_START, 443)},
            )
        ),
        _bridge_rules()[2],
    ]


class TestAtomicCutover:
    @pytest.fixture
    def phase_snapshots(self, driver, netfilter, monkeypatch):
        snapshots = []
        transition = driver._transition

        def record(ifname, state):
            snapshots.append((state, netfilter.snapshot()))
            transition(ifname, state)

        monkeypatch.setattr(driver, '_transition', record)
        return snapshots

    @pytest.mark.parametrize('previous', [[], [_web_rule(), *_bridge_rules()]])
    def test_every_phase_sees_one_whole_generation(self, driver, netfilter, phase_snapshots, previous):
        if previous:
            driver.apply_policy('vnet0', previous)
        old = _effective_filters(netfilter.snapshot())
        phase_snapshots.clear()

        driver.apply_policy('vnet0', _second_generation())
        new = _effective_filters(netfilter.snapshot())

        assert old != new
        assert new['ebtables', 'PREROUTING'] is not None
        assert new['iptables', 'libvirt-in'] is not None
        states = [state for state, _tables in phase_snapshots]
        assert states == [
            ApplyState.BUILDING_TEMP,
            ApplyState.POPULATING,
            ApplyState.LINKING,
            ApplyState.IDLE,
            ApplyState.PROMOTING,
            ApplyState.IDLE,
        ]
        seen = [_effective_filters(tables) for _state, tables in phase_snapshots]
        for state, filters in zip(states, seen, strict=True):
            assert filters in (old, new), state
        assert seen[0] == old
        if previous:
            assert seen[-2] == old
        assert seen[-1] == new


class TestRollback:
    @pytest.fixture
    def applied(self, driver, netfilter):
        driver.apply_policy('vnet0', [_web_rule(), *_bridge_rules()])
        return netfilter.snapshot()

    @pytest.mark.parametrize(
        'failing',
        [
            '-N FJ-vnet0',
            '-A FJ-vnet0',
            '-A J-vnet0-arp',
            '-A libvirt-host-in',
            '-A POSTROUTING -o vnet0 -j libvirt-P-vnet0',
        ],
    )
    def test_failure_restores_the_previous_state(self, driver, netfilter, applied, failing):
        netfilter.fail_on(failing)
        with pytest.raises(ApplyError) as excinfo:
            driver.apply_new_rules('vnet0', [_web_rule(), *_bridge_rules()])
        assert excinfo.value.ifname == 'vnet0'
        assert 'injected failure' in str(excinfo.value)
        assert netfilter.snapshot() == applied
        assert driver.state is ApplyState.IDLE

    def test_compile_error_submits_nothing(self, driver, netfilter):
        bad = RuleInstance(
            Rule(
                Protocol.STP,
                Direction.INOUT,
                matches={F.SRC_MAC_ADDR: _match(Protocol.STP, F.SRC_MAC_ADDR, MAC)},
            ),
            chain_suffix='stp',
        )
        with pytest.raises(ApplyError, match='STP filtering'):
            driver.apply_policy('vnet0', [bad])
        assert netfilter.calls == []

    def test_missing_tool_submits_nothing(self, tools, netfilter, tmp_path):
        tools = dataclasses.replace(tools, iptables=None)
        driver = EbiptablesDriver(
            tools,
            executor=DiscreteRuleExecutor(tools, netfilter),
            bridge_nf_checker=BridgeNfCallChecker(proc_dir=tmp_path),
        )
        with pytest.raises(ApplyError, match='iptables tool is missing'):
            driver.apply_new_rules('vnet0', [_web_rule()])
        assert netfilter.calls == []


class TestTeardown:
    def test_all_teardown_removes_every_interface_chain(self, driver, netfilter):
        driver.apply_policy('vnet0', [_web_rule(), *_bridge_rules()])
        driver.apply_new_rules('vnet0', [_web_rule(), *_bridge_rules()])
        driver.all_teardown('vnet0')
        assert _interface_chains(netfilter) == {'ebtables': [], 'iptables': [], 'ip6tables': []}
        ebt = netfilter.chains('ebtables')
        assert ebt['PREROUTING'] == []
        assert ebt['POSTROUTING'] == []
        ipt = netfilter.chains('iptables')
        for chain in ('libvirt-in', 'libvirt-out', 'libvirt-host-in', 'libvirt-in-post'):
            assert ipt[chain] == []

    def test_teardown_of_unknown_interface_succeeds(self, driver, netfilter):
        before = netfilter.snapshot()
        driver.all_teardown('vnet9')
        assert netfilter.snapshot() == before


class TestEnvironmentWarnings:
    def test_bridge_nf_call_warning_is_returned(self, tools, netfilter, tmp_path):
        (tmp_path / 'bridge-nf-call-iptables').write_text('0\n')
        driver = EbiptablesDriver(
            tools,
            executor=DiscreteRuleExecutor(tools, netfilter),
            bridge_nf_checker=BridgeNfCallChecker(proc_dir=tmp_path),
        )
        result = driver.apply_policy('vnet0', [_web_rule()])
        assert len(result.warnings) == 1
        assert 'bridge-nf-call-iptables' in str(result.warnings[0])


class TestBasicRules:
    def test_basic_rules(self, driver, netfilter):
        driver.apply_basic_rules('vnet0', '52:54:00:AA:BB:CC')
        ebt = netfilter.chains('ebtables')
        assert ebt['PREROUTING'] == [('-i', 'vnet0', '-j', 'libvirt-I-vnet0')]
        assert ebt['libvirt-I-vnet0'] == [
            ('-s', '!', MAC, '-j', 'DROP'),
            ('-p', 'IPv4', '-j', 'ACCEPT'),
            ('-p', 'ARP', '-j', 'ACCEPT'),
            ('-j', 'DROP'),
        ]
        assert 'libvirt-O-vnet0' not in ebt

    def test_basic_rules_replace_a_policy(self, driver, netfilter):
        driver.apply_policy('vnet0', [_web_rule(), *_bridge_rules()])
        driver.apply_basic_rules('vnet0', MAC)
        assert _interface_chains(netfilter) == {
            'ebtables': ['libvirt-I-vnet0'],
            'iptables': [],
            'ip6tables': [],
        }

    def test_dhcp_only_rules(self, driver, netfilter):
        driver.apply_dhcp_only_rules('vnet0', MAC, ['10.0.0.1'])
        ebt = netfilter.chains('ebtables')
        assert ebt['libvirt-I-vnet0'] == [
            (
                '-s', MAC, '-p', 'ipv4', '--ip-protocol', 'udp',
                '--ip-sport', '68', '--ip-dport', '67', '-j', 'ACCEPT',
            ),
            ('-j', 'DROP'),
        ]
        assert ebt['libvirt-O-vnet0'] == [
            (
                '-d', MAC, '-p', 'ipv4', '--ip-protocol', 'udp', '--ip-src', '10.0.0.1',
                '--ip-sport', '67', '--ip-dport', '68', '-j', 'ACCEPT',
            ),
            (
                '-d', 'ff:ff:ff:ff:ff:ff', '-p', 'ipv4', '--ip-protocol', 'udp',
                '--ip-src', '10.0.0.1', '--ip-sport', '67', '--ip-dport', '68', '-j', 'ACCEPT',
            ),
            ('-j', 'DROP'),
        ]

    def test_dhcp_only_rules_without_servers(self, driver, netfilter):
        driver.apply_dhcp_only_rules('vnet0', MAC)
        rules = netfilter.chains('ebtables')['libvirt-O-vnet0']
        assert len(rules) == 3
        assert all('--ip-src' not in rule for rule in rules)

    def test_dhcp_only_rules_left_temporary(self, driver, netfilter):
        driver.apply_dhcp_only_rules('vnet0', MAC, leave_temporary=True)
        assert _interface_chains(netfilter)['ebtables'] == ['libvirt-J-vnet0', 'libvirt-P-vnet0']

    def test_drop_all_rules(self, driver, netfilter):
        driver.apply_drop_all_rules('vnet0')
        ebt = netfilter.chains('ebtables')
        assert ebt['libvirt-I-vnet0'] == [('-j', 'DROP')]
        assert ebt['libvirt-O-vnet0'] == [('-j', 'DROP')]

    def test_failure_removes_everything(self, driver, netfilter):
        netfilter.fail_on('-p ARP')
        with pytest.raises(ApplyError):
            driver.apply_basic_rules('vnet0', MAC)
        assert _interface_chains(netfilter)['ebtables'] == []
        assert netfilter.chains('ebtables')['PREROUTING'] == []

    def test_remove_basic_rules(self, driver, netfilter):
        driver.apply_drop_all_rules('vnet0')
        driver.remove_basic_rules('vnet0')
        assert _interface_chains(netfilter)['ebtables'] == []

    def test_malformed_mac(self, driver, netfilter):
        with pytest.raises(CompileError, match='malformed MAC address'):
            driver.apply_basic_rules('vnet0', 'not-a-mac')
        assert netfilter.calls == []

    def test_basic_rules_need_ebtables(self, tools, netfilter):
        tools = dataclasses.replace(tools, ebtables=None)
        driver = EbiptablesDriver(tools, executor=DiscreteRuleExecutor(tools, netfilter))
        assert driver.can_apply_basic_rules() is False
        with pytest.raises(ToolUnavailableError):
            driver.apply_drop_all_rules('vnet0')
