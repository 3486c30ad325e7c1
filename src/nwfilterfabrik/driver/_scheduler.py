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

"""Ordering of rule commands and bridge-layer sub-chain creation.

Rules placed into the root chain come first, the others follow by
ascending priority.  A rule in a sub-chain never runs before the
sub-chain is created: its priority is raised to the chain's priority
and sub-chain creation is interleaved in front of the first rule whose
priority reaches the chain's.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable, Sequence

from nwfilterfabrik.core import ROOT_CHAIN, Command, Direction, RuleInstance
from nwfilterfabrik.platforms.ebtables import create_tmp_sub_chain

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ScheduledItem:
    """Commands that must run as a unit, with their ordering key."""

    commands: tuple[Command, ...]
    priority: int
    needed_chain: str = ROOT_CHAIN


@dataclasses.dataclass
class EthernetSchedule:
    """Bridge-layer part of a generation.

    ``chains_in`` and ``chains_out`` map each chain suffix used by the
    ``J`` and ``P`` side to its priority; a side without any entry gets
    no root chain at all.
    """

    chains_in: dict[str, int]
    chains_out: dict[str, int]
    commands: list[Command]


def sort_rule_instances(instances: Iterable[RuleInstance]) -> list[RuleInstance]:
    """Stable sort: root chain rules first, then by ascending priority."""
    return sorted(instances, key=lambda inst: (not inst.is_root, inst.priority))


def effective_priority(instance: RuleInstance) -> int:
    """Rule priority raised to its chain's priority outside the root chain."""
    if not instance.is_root and instance.chain_priority > instance.priority:
        return instance.chain_priority
    return instance.priority


def collect_chain_priorities(
    instances: Iterable[RuleInstance],
) -> tuple[dict[str, int], dict[str, int]]:
    """Return the chain priorities of the ``J`` and the ``P`` side.

    A chain's priority is the lowest one declared by any rule placed in it.
    """
    chains_in: dict[str, int] = {}
    chains_out: dict[str, int] = {}
    for inst in instances:
        if not inst.rule.protocol.is_ethernet:
            continue
        sides = []
        if inst.rule.direction in (Direction.OUT, Direction.INOUT):
            sides.append(chains_in)
        if inst.rule.direction in (Direction.IN, Direction.INOUT):
            sides.append(chains_out)
        for chains in sides:
            current = chains.get(inst.chain_suffix)
            if current is None or inst.chain_priority < current:
                chains[inst.chain_suffix] = inst.chain_priority
    return chains_in, chains_out


def chain_items(ifname: str, chains_in: dict[str, int], chains_out: dict[str, int]) -> list[ScheduledItem]:
    """Sub-chain creation items of both sides, ordered by chain priority."""
    items = []
    for incoming, chains in ((True, chains_in), (False, chains_out)):
        for suffix, priority in sorted(chains.items(), key=lambda kv: kv[1]):
            commands = create_tmp_sub_chain(incoming, ifname, suffix)
            if commands:
                items.append(ScheduledItem(tuple(commands), priority, suffix))
    return sorted(items, key=lambda item: item.priority)


def interleave(rules: Sequence[ScheduledItem], chains: Sequence[ScheduledItem]) -> list[Command]:
    """Merge rule items with chain items.

    Each chain item is placed in front of the first rule item whose
    priority is at least the chain's; the rest goes at the end.
    """
    commands: list[Command] = []
    j = 0
    for rule in rules:
        while j < len(chains) and chains[j].priority <= rule.priority:
            commands.extend(chains[j].commands)
            j += 1
        commands.extend(rule.commands)
    for chain in chains[j:]:
        commands.extend(chain.commands)
    return commands


def schedule_ethernet(
    ifname: str,
    instances: Iterable[RuleInstance],
    compile_instance: Callable[[RuleInstance], list[Command]],
) -> EthernetSchedule:
    """Compile and order the bridge-layer rules of one interface."""
    ordered = [inst for inst in sort_rule_instances(instances) if inst.rule.protocol.is_ethernet]
    chains_in, chains_out = collect_chain_priorities(ordered)
    rules = [
        ScheduledItem(
            tuple(compile_instance(inst)),
            effective_priority(inst),
            inst.chain_suffix,
        )
        for inst in ordered
    ]
    commands = interleave(rules, chain_items(ifname, chains_in, chains_out))
    logger.debug(
        'Scheduled %d bridge-layer commands for %s (J chains %s, P chains %s)',
        len(commands),
        ifname,
        sorted(chains_in),
        sorted(chains_out),
    )
    return EthernetSchedule(chains_in, chains_out, commands)
