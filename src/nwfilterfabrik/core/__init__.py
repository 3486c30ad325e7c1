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

"""Rule model, commands, probed environment, errors and policy loading."""

from ._command import Command, Layer, ebt, ipt, shell_quote
from ._environment import CtdirStatus, ExecutorKind, StateMatchSyntax, ToolConfig
from ._exceptions import (
    ApplyError,
    CompileError,
    EnvironmentWarning,
    ExecutionError,
    NWFilterError,
    ToolUnavailableError,
)
from ._rules import (
    DEFAULT_CHAIN_PRIORITIES,
    DEFAULT_RULE_PRIORITY,
    FIELD_DATATYPES,
    PROTOCOL_FIELDS,
    ROOT_CHAIN,
    ConnState,
    DataType,
    Direction,
    HeaderField,
    Matcher,
    Protocol,
    Rule,
    RuleAction,
    RuleInstance,
    TcpFlag,
    datatype_for,
    default_chain_priority,
)
from ._variables import VariableCombinations
from ._yaml_reader import Policy, PolicyReader

__all__ = [
    'DEFAULT_CHAIN_PRIORITIES',
    'DEFAULT_RULE_PRIORITY',
    'FIELD_DATATYPES',
    'PROTOCOL_FIELDS',
    'ROOT_CHAIN',
    'ApplyError',
    'Command',
    'CompileError',
    'ConnState',
    'CtdirStatus',
    'DataType',
    'Direction',
    'EnvironmentWarning',
    'ExecutionError',
    'ExecutorKind',
    'HeaderField',
    'Layer',
    'Matcher',
    'NWFilterError',
    'Policy',
    'PolicyReader',
    'Protocol',
    'Rule',
    'RuleAction',
    'RuleInstance',
    'StateMatchSyntax',
    'TcpFlag',
    'ToolConfig',
    'ToolUnavailableError',
    'VariableCombinations',
    'datatype_for',
    'default_chain_priority',
    'ebt',
    'ipt',
    'shell_quote',
]
