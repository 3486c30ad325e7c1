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

"""Shared pytest fixtures: in-memory netfilter tables and scripted runners.

:class:`FakeNetfilter` understands the subset of ebtables, iptables and
ip6tables the driver uses and keeps one table per tool, so apply and
teardown sequences can be checked against the resulting chain state
instead of against command lists.
"""

import copy

import pytest

from nwfilterfabrik.core import CtdirStatus, ExecutorKind, StateMatchSyntax, ToolConfig
from nwfilterfabrik.driver import BridgeNfCallChecker, DiscreteRuleExecutor, EbiptablesDriver

BUILTIN_CHAINS = {
    'ebtables': ('PREROUTING', 'OUTPUT', 'POSTROUTING'),
    'iptables': ('INPUT', 'FORWARD', 'OUTPUT'),
    'ip6tables': ('INPUT', 'FORWARD', 'OUTPUT'),
}

BUILTIN_TARGETS = frozenset({'ACCEPT', 'DROP', 'RETURN', 'REJECT', 'CONTINUE'})


def _target_index(rule):
    for i in range(len(rule) - 2, -1, -1):
        if rule[i] in ('-j', '-g'):
            return i + 1
    return None


def _target(rule):
    i = _target_index(rule)
    return rule[i] if i is not None else None


class FakeNetfilter:
    """Process runner simulating the chain state of the filtering tools."""

    def __init__(self):
        self.tables = {
            tool: {chain: [] for chain in chains} for tool, chains in BUILTIN_CHAINS.items()
        }
        self.calls = []
        self._failures = []

    def fail_on(self, text):
        """Make every command whose argument line contains *text* fail."""
        self._failures.append(text)

    def snapshot(self):
        return copy.deepcopy(self.tables)

    def chains(self, tool):
        return self.tables[tool]

    def user_chains(self, tool):
        return sorted(c for c in self.tables[tool] if c not in BUILTIN_CHAINS[tool])

    # -- process runner ---------------------------------------------------

    def run(self, argv, capture_output=True):
        argv = list(argv)
        self.calls.append(argv)
        tool, args = argv[0].rsplit('/', 1)[-1], argv[1:]
        if tool not in self.tables:
            return f'{tool}: command not found', 127
        line = ' '.join(args)
        if any(text in line for text in self._failures):
            return f'{tool}: injected failure', 1
        if args == ['--version']:
            return f'{tool} v1.8.7 (legacy)\n', 0
        if args[:2] == ['-t', 'nat']:
            args = args[2:]
        if args and args[0] == '-n':
            args = args[1:]
        if not args:
            return f'{tool}: no command specified', 2
        handler = {
            '-N': self._new,
            '-X': self._delete_chain,
            '-F': self._flush,
            '-A': self._append,
            '-I': self._insert,
            '-D': self._delete_rule,
            '-E': self._rename,
            '-L': self._list,
        }.get(args[0])
        if handler is None:
            return f'{tool}: unknown command {args[0]}', 2
        return handler(tool, args[1:])

    # -- commands ---------------------------------------------------------

    def _missing(self, tool, chain):
        return f"{tool}: Chain '{chain}' doesn't exist.", 1

    def _new(self, tool, args):
        table = self.tables[tool]
        if args[0] in table:
            return f"{tool}: Chain '{args[0]}' already exists.", 1
        table[args[0]] = []
        return '', 0

    def _delete_chain(self, tool, args):
        table = self.tables[tool]
        chain = args[0]
        if chain not in table:
            return self._missing(tool, chain)
        if chain in BUILTIN_CHAINS[tool] or table[chain]:
            return f"{tool}: Chain '{chain}' is not empty.", 1
        for rules in table.values():
            if any(_target(rule) == chain for rule in rules):
                return f"{tool}: Chain '{chain}' is still referenced.", 1
        del table[chain]
        return '', 0

    def _flush(self, tool, args):
        table = self.tables[tool]
        if args[0] not in table:
            return self._missing(tool, args[0])
        table[args[0]] = []
        return '', 0

    def _check_target(self, tool, rule):
        target = _target(rule)
        if target is None or target in BUILTIN_TARGETS or target in self.tables[tool]:
            return None
        return f"{tool}: Couldn't load target '{target}'", 1

    def _append(self, tool, args):
        chain, rule = args[0], tuple(args[1:])
        if chain not in self.tables[tool]:
            return self._missing(tool, chain)
        error = self._check_target(tool, rule)
        if error:
            return error
        self.tables[tool][chain].append(rule)
        return '', 0

    def _insert(self, tool, args):
        chain, position, rule = args[0], int(args[1]), tuple(args[2:])
        rules = self.tables[tool].get(chain)
        if rules is None:
            return self._missing(tool, chain)
        if not 1 <= position <= len(rules) + 1:
            return f'{tool}: Index of insertion too big.', 1
        error = self._check_target(tool, rule)
        if error:
            return error
        rules.insert(position - 1, rule)
        return '', 0

    def _delete_rule(self, tool, args):
        chain, rule = args[0], tuple(args[1:])
        rules = self.tables[tool].get(chain)
        if rules is None:
            return self._missing(tool, chain)
        if len(rule) == 1 and rule[0].isdigit():
            index = int(rule[0]) - 1
            if not 0 <= index < len(rules):
                return f'{tool}: Index of deletion too big.', 1
            del rules[index]
            return '', 0
        if rule not in rules:
            return f'{tool}: Bad rule (does a matching rule exist in that chain?).', 1
        rules.remove(rule)
        return '', 0

    def _rename(self, tool, args):
        table = self.tables[tool]
        old, new = args
        if old not in table:
            return self._missing(tool, old)
        if new in table:
            return f"{tool}: Chain '{new}' already exists.", 1
        table[new] = table.pop(old)
        for chain, rules in table.items():
            renamed = []
            for rule in rules:
                i = _target_index(rule)
                if i is not None and rule[i] == old:
                    rule = (*rule[:i], new, *rule[i + 1 :])
                renamed.append(rule)
            table[chain] = renamed
        return '', 0

    def _list(self, tool, args):
        line_numbers = '--line-numbers' in args
        names = [a for a in args if a != '--line-numbers']
        table = self.tables[tool]
        if names and names[0] not in table:
            return self._missing(tool, names[0])
        lines = []
        for chain in names or list(table):
            rules = table[chain]
            if tool == 'ebtables':
                lines.append(f'Bridge chain: {chain}, entries: {len(rules)}, policy: ACCEPT')
                lines.extend(' '.join(rule) for rule in rules)
                continue
            lines.append(f'Chain {chain} (policy ACCEPT)')
            lines.append(('num  ' if line_numbers else '') + 'target prot opt source destination')
            for number, rule in enumerate(rules, start=1):
                i = _target_index(rule)
                target = rule[i] if i is not None else ''
                rest = [w for j, w in enumerate(rule) if i is None or j not in (i - 1, i)]
                text = f'{target} all -- 0.0.0.0/0 0.0.0.0/0 {" ".join(rest)}'.rstrip()
                lines.append(f'{number} {text}' if line_numbers else text)
        return '\n'.join(lines) + '\n', 0


class ScriptedRunner:
    """Process runner returning canned results and recording every call."""

    def __init__(self, results=None, default=('', 0)):
        self.results = dict(results or {})
        self.default = default
        self.calls = []

    def run(self, argv, capture_output=True):
        argv = list(argv)
        self.calls.append(argv)
        return self.results.get(tuple(argv), self.default)


@pytest.fixture
def tools():
    return ToolConfig(
        ebtables=('ebtables',),
        iptables=('iptables',),
        ip6tables=('ip6tables',),
        executor=ExecutorKind.DISCRETE,
        ctdir=CtdirStatus.UNKNOWN,
        state_syntax=StateMatchSyntax.OLD,
    )


@pytest.fixture
def netfilter():
    return FakeNetfilter()


@pytest.fixture
def driver(tools, netfilter, tmp_path):
    return EbiptablesDriver(
        tools,
        executor=DiscreteRuleExecutor(tools, netfilter),
        bridge_nf_checker=BridgeNfCallChecker(proc_dir=tmp_path / 'bridge'),
    )
