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

"""RuleCompiler: dispatches rules to the backend compiler of their layer.

Compilation is pure: the same rule, interface and variable binding always
yield the same commands.  A rule referencing multi-valued variables is
compiled once per combination of values.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from nwfilterfabrik.core import (
    Command,
    Layer,
    Rule,
    RuleInstance,
    ToolConfig,
    ToolUnavailableError,
    VariableCombinations,
)
from nwfilterfabrik.platforms.ebtables import EbtablesRuleCompiler
from nwfilterfabrik.platforms.iptables import IptablesRuleCompiler

logger = logging.getLogger(__name__)

_TOOL_NAMES = {
    Layer.ETHERNET: 'ebtables',
    Layer.IPV4: 'iptables',
    Layer.IPV6: 'ip6tables',
}


class RuleCompiler:
    """Compile rules into commands for the backend their protocol selects."""

    def __init__(self, tools: ToolConfig) -> None:
        self.tools = tools
        self.ebtables = EbtablesRuleCompiler()
        self.iptables = IptablesRuleCompiler(tools)

    def compile(
        self,
        rule: Rule,
        ifname: str,
        binding: Mapping[str, str],
        chain_suffix: str,
    ) -> list[Command]:
        layer = rule.protocol.layer
        if not self.tools.has(layer):
            raise ToolUnavailableError(
                f'cannot create rule since {_TOOL_NAMES[layer]} tool is missing'
            )
        if layer is Layer.ETHERNET:
            return self.ebtables.compile(rule, ifname, binding, chain_suffix)
        return self.iptables.compile(rule, ifname, binding)

    def compile_instance(self, instance: RuleInstance, ifname: str) -> list[Command]:
        """Compile *instance* for every combination of its variables."""
        rule = instance.rule
        combinations = VariableCombinations(instance.variables, rule.variable_refs())
        commands = []
        for binding in combinations:
            commands += self.compile(rule, ifname, binding, instance.chain_suffix)
        logger.debug(
            'Compiled rule %s/%s priority %d into %d commands (%d variable combinations)',
            rule.protocol,
            rule.direction,
            rule.priority,
            len(commands),
            len(combinations),
        )
        return commands
