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

"""iptables/ip6tables chain topology for one interface.

Four base chains are shared by all interfaces and hooked into the
filter table's system chains at fixed positions::

    FORWARD 1 -> libvirt-in        FORWARD 3 -> libvirt-in-post
    FORWARD 2 -> libvirt-out       INPUT   1 -> libvirt-host-in

Every interface gets three root chains per generation, reached from the
base chains through physdev matches: ``FP``/``FO`` (to the VM), ``FJ``/
``FI`` (from the VM) and ``HJ``/``HI`` (from the VM to the host).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from nwfilterfabrik.core import Command, Layer, ipt
from nwfilterfabrik.platforms._prefixes import host_marker

logger = logging.getLogger(__name__)

VIRT_IN_CHAIN = 'libvirt-in'
VIRT_OUT_CHAIN = 'libvirt-out'
VIRT_IN_POST_CHAIN = 'libvirt-in-post'
HOST_IN_CHAIN = 'libvirt-host-in'

BASE_CHAINS = (VIRT_IN_CHAIN, VIRT_OUT_CHAIN, VIRT_IN_POST_CHAIN, HOST_IN_CHAIN)

# (system chain, base chain, rule position)
BASE_CHAIN_LINKS = (
    ('FORWARD', VIRT_IN_CHAIN, 1),
    ('FORWARD', VIRT_OUT_CHAIN, 2),
    ('FORWARD', VIRT_IN_POST_CHAIN, 3),
    ('INPUT', HOST_IN_CHAIN, 1),
)

FORWARD_PREFIX = 'F'
HOST_PREFIX = 'H'


def root_chain_name(prefix: str, marker: str, ifname: str) -> str:
    return f'{prefix}{marker}-{ifname}'


def _roots(temp: bool) -> tuple[tuple[str, str], ...]:
    """The (prefix, marker) pairs of one generation in FP, FJ, HJ order."""
    return (
        (FORWARD_PREFIX, host_marker(False, temp)),
        (FORWARD_PREFIX, host_marker(True, temp)),
        (HOST_PREFIX, host_marker(True, temp)),
    )


def root_chain_names(ifname: str, temp: bool) -> list[str]:
    return [root_chain_name(prefix, marker, ifname) for prefix, marker in _roots(temp)]


def find_rule_position(lines: Sequence[str], chain: str) -> int | None:
    """Return the rule number jumping to *chain* in a ``--line-numbers`` listing."""
    for line in lines:
        parts = line.split()
        if len(parts) >= 2 and parts[0].isdigit() and parts[1] == chain:
            return int(parts[0])
    return None


def _relink(layer: Layer, system_chain: str, chain: str, position: int):
    def callback(lines: list[str]) -> list[Command]:
        found = find_rule_position(lines, chain)
        if found == position:
            return []
        insert = ipt(
            layer, '-I', system_chain, str(position), '-j', chain, ignore_errors=found is None
        )
        commands = [insert]
        if found is not None:
            # the insert above shifted every rule at or after position
            stale = found + 1 if found >= position else found
            logger.debug(
                'Moving %s in %s from rule %d to %d', chain, system_chain, found, position
            )
            commands.append(ipt(layer, '-D', system_chain, str(stale)))
        return commands

    return callback


def setup_base_chains(layer: Layer) -> list[Command]:
    """Create the base chains and make sure they sit at their fixed positions."""
    commands = [ipt(layer, '-N', chain, ignore_errors=True) for chain in BASE_CHAINS]
    commands += [
        ipt(
            layer,
            '-n',
            '-L',
            system_chain,
            '--line-numbers',
            query=_relink(layer, system_chain, chain, position),
        )
        for system_chain, chain, position in BASE_CHAIN_LINKS
    ]
    return commands


def create_tmp_root_chains(layer: Layer, ifname: str) -> list[Command]:
    return [ipt(layer, '-N', chain) for chain in root_chain_names(ifname, temp=True)]


def _link_rules(ifname: str, temp: bool, legacy: bool = False) -> list[tuple[str, ...]]:
    to_vm, from_vm, to_host = root_chain_names(ifname, temp)
    rules = [
        (VIRT_OUT_CHAIN, '-m', 'physdev', '--physdev-is-bridged', '--physdev-out', ifname, '-g', to_vm),
        (VIRT_IN_CHAIN, '-m', 'physdev', '--physdev-in', ifname, '-g', from_vm),
        (HOST_IN_CHAIN, '-m', 'physdev', '--physdev-in', ifname, '-g', to_host),
    ]
    if legacy:
        rules.insert(1, (VIRT_OUT_CHAIN, '-m', 'physdev', '--physdev-out', ifname, '-g', to_vm))
    return rules


def link_tmp_root_chains(layer: Layer, ifname: str) -> list[Command]:
    return [ipt(layer, '-A', *rule) for rule in _link_rules(ifname, temp=True)]


def unlink_root_chains(layer: Layer, ifname: str, temp: bool) -> list[Command]:
    """Remove the jumps into one generation's root chains.

    Also removes the outbound jump without ``--physdev-is-bridged`` that
    older releases installed.
    """
    return [
        ipt(layer, '-D', *rule, ignore_errors=True)
        for rule in _link_rules(ifname, temp, legacy=True)
    ]


def remove_root_chains(layer: Layer, ifname: str, temp: bool) -> list[Command]:
    commands = []
    for chain in root_chain_names(ifname, temp):
        commands += [
            ipt(layer, '-F', chain, ignore_errors=True),
            ipt(layer, '-X', chain, ignore_errors=True),
        ]
    return commands


def rename_tmp_root_chains(layer: Layer, ifname: str, ignore_errors: bool = True) -> list[Command]:
    return [
        ipt(layer, '-E', tmp, active, ignore_errors=ignore_errors)
        for tmp, active in zip(
            root_chain_names(ifname, temp=True),
            root_chain_names(ifname, temp=False),
            strict=True,
        )
    ]


def _in_post_args(ifname: str) -> tuple[str, ...]:
    return (VIRT_IN_POST_CHAIN, '-m', 'physdev', '--physdev-in', ifname, '-j', 'ACCEPT')


def has_physdev_in(lines: Sequence[str], ifname: str) -> bool:
    for line in lines:
        words = line.split()
        for first, second in zip(words, words[1:]):
            if first == '--physdev-in' and second == ifname:
                return True
    return False


def setup_virt_in_post(layer: Layer, ifname: str) -> list[Command]:
    """Accept the interface's traffic in ``libvirt-in-post`` unless already done."""

    def callback(lines: list[str]) -> list[Command]:
        if has_physdev_in(lines, ifname):
            return []
        return [ipt(layer, '-A', *_in_post_args(ifname))]

    return [ipt(layer, '-n', '-L', VIRT_IN_POST_CHAIN, query=callback)]


def clear_virt_in_post(layer: Layer, ifname: str) -> list[Command]:
    return [ipt(layer, '-D', *_in_post_args(ifname), ignore_errors=True)]
