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

"""ebtables chain topology for one interface.

Every interface gets one root chain per direction in the nat table,
hooked into PREROUTING (traffic from the VM) or POSTROUTING (traffic to
the VM).  Protocol sub-chains hang off a root chain behind a coarse
protocol match::

    PREROUTING -i vnet0 -j libvirt-J-vnet0
    libvirt-J-vnet0 -p 0x0800 -j J-vnet0-ipv4

Sub-chains are found again for teardown and rename by listing a chain
and following its jump targets, see :func:`list_child_chains`.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence

from nwfilterfabrik.core import ROOT_CHAIN, Command, ebt
from nwfilterfabrik.platforms._prefixes import (
    ACTIVE_MARKERS,
    TEMP_MARKERS,
    active_marker,
    host_marker,
)

logger = logging.getLogger(__name__)

# Destination of spanning tree BPDUs (bridge group address)
MAC_BGA = '01:80:c2:00:00:00'


@dataclasses.dataclass(frozen=True)
class ProtocolChain:
    """A known protocol prefix of sub-chain names and how to select its traffic."""

    name: str
    ethertype: int | None = None

    def match(self) -> tuple[str, ...]:
        if self.name == 'stp':
            return ('-d', MAC_BGA)
        if self.ethertype is None:
            return ()
        return ('-p', f'0x{self.ethertype:04x}')


PROTOCOL_CHAINS: tuple[ProtocolChain, ...] = (
    ProtocolChain('ipv4', 0x0800),
    ProtocolChain('ipv6', 0x86DD),
    ProtocolChain('arp', 0x0806),
    ProtocolChain('rarp', 0x8035),
    ProtocolChain('vlan', 0x8100),
    ProtocolChain('stp'),
    ProtocolChain('mac'),
)


def protocol_chain_for(suffix: str) -> ProtocolChain | None:
    """Return the protocol chain whose name *suffix* starts with."""
    for proto in PROTOCOL_CHAINS:
        if suffix.startswith(proto.name):
            return proto
    return None


def root_chain_name(marker: str, ifname: str) -> str:
    return f'libvirt-{marker}-{ifname}'


def sub_chain_name(marker: str, ifname: str, suffix: str) -> str:
    return f'{marker}-{ifname}-{suffix}'


def chain_name(marker: str, ifname: str, suffix: str) -> str:
    if suffix == ROOT_CHAIN:
        return root_chain_name(marker, ifname)
    return sub_chain_name(marker, ifname, suffix)


def _hook(incoming: bool, ifname: str) -> tuple[str, ...]:
    if incoming:
        return ('PREROUTING', '-i', ifname)
    return ('POSTROUTING', '-o', ifname)


def create_tmp_root_chain(incoming: bool, ifname: str) -> list[Command]:
    return [ebt('-N', root_chain_name(host_marker(incoming, True), ifname))]


def create_tmp_sub_chain(incoming: bool, ifname: str, suffix: str) -> list[Command]:
    """Create a temporary protocol sub-chain and link it into its root chain.

    Suffixes without a known protocol prefix get no sub-chain.
    """
    proto = protocol_chain_for(suffix)
    if proto is None:
        return []
    marker = host_marker(incoming, True)
    chain = sub_chain_name(marker, ifname, suffix)
    return [
        ebt('-F', chain, ignore_errors=True),
        ebt('-X', chain, ignore_errors=True),
        ebt('-N', chain),
        ebt('-A', root_chain_name(marker, ifname), *proto.match(), '-j', chain),
    ]


def link_tmp_root_chain(incoming: bool, ifname: str) -> list[Command]:
    chain = root_chain_name(host_marker(incoming, True), ifname)
    return [ebt('-A', *_hook(incoming, ifname), '-j', chain)]


def unlink_root_chain(incoming: bool, ifname: str, temp: bool) -> list[Command]:
    chain = root_chain_name(host_marker(incoming, temp), ifname)
    return [ebt('-D', *_hook(incoming, ifname), '-j', chain, ignore_errors=True)]


def remove_root_chain(incoming: bool, ifname: str, temp: bool) -> list[Command]:
    chain = root_chain_name(host_marker(incoming, temp), ifname)
    return [
        ebt('-F', chain, ignore_errors=True),
        ebt('-X', chain, ignore_errors=True),
    ]


def rename_tmp_root_chain(incoming: bool, ifname: str, ignore_errors: bool = False) -> list[Command]:
    return [
        ebt(
            '-E',
            root_chain_name(host_marker(incoming, True), ifname),
            root_chain_name(host_marker(incoming, False), ifname),
            ignore_errors=ignore_errors,
        )
    ]


def list_child_chains(lines: Sequence[str], markers: str) -> list[str]:
    """Return the jump targets in an ``ebtables -L`` listing that are sub-chains.

    A target is a sub-chain of ours when it starts with one of *markers*
    followed by a dash.  Each child is reported once, in listing order.
    """
    children: list[str] = []
    for line in lines:
        pos = line.find('-j ')
        if pos < 0:
            continue
        words = line[pos + 3 :].split()
        if not words:
            continue
        target = words[0]
        if len(target) > 1 and target[0] in markers and target[1] == '-':
            if target not in children:
                children.append(target)
    return children


def _remove_children(parent: str, markers: str):
    def callback(lines: list[str]) -> list[Command]:
        children = list_child_chains(lines, markers)
        logger.debug('Chain %s has sub-chains %s', parent, children)
        commands = [
            ebt('-L', child, ignore_errors=True, query=_remove_children(child, markers))
            for child in children
        ]
        # A child can only be deleted once nothing jumps to it any more.
        commands.append(ebt('-F', parent, ignore_errors=True))
        commands.extend(ebt('-X', child, ignore_errors=True) for child in children)
        return commands

    return callback


def remove_sub_chains(ifname: str, markers: str) -> list[Command]:
    """Recursively remove every sub-chain below the root chains for *markers*."""
    commands = []
    for marker in markers:
        root = root_chain_name(marker, ifname)
        commands.append(
            ebt('-L', root, ignore_errors=True, query=_remove_children(root, markers))
        )
    return commands


def remove_tmp_sub_chains(ifname: str) -> list[Command]:
    return remove_sub_chains(ifname, TEMP_MARKERS)


def remove_active_sub_chains(ifname: str) -> list[Command]:
    return remove_sub_chains(ifname, ACTIVE_MARKERS)


def _rename_children(ignore_errors: bool):
    def callback(lines: list[str]) -> list[Command]:
        commands = []
        for child in list_child_chains(lines, TEMP_MARKERS):
            new = active_marker(child[0]) + child[1:]
            commands += [
                ebt('-L', child, ignore_errors=True, query=callback),
                ebt('-F', new, ignore_errors=True),
                ebt('-X', new, ignore_errors=True),
                ebt('-E', child, new, ignore_errors=ignore_errors),
            ]
        return commands

    return callback


def rename_tmp_sub_and_root_chains(ifname: str, ignore_errors: bool = True) -> list[Command]:
    """Rename the temporary sub-chains and then both root chains to their active names."""
    commands = [
        ebt(
            '-L',
            root_chain_name(marker, ifname),
            ignore_errors=True,
            query=_rename_children(ignore_errors),
        )
        for marker in TEMP_MARKERS
    ]
    commands += rename_tmp_root_chain(True, ifname, ignore_errors)
    commands += rename_tmp_root_chain(False, ifname, ignore_errors)
    return commands
