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

"""Compiler infrastructure for filter rule compilation.

The dispatching :class:`~nwfilterfabrik.compiler._compiler.RuleCompiler`
is imported from its module; the backend compilers build on this package.
"""

from ._base import BaseCompiler, describe_rule
from ._datatypes import (
    MAX_IPSET_FLAGS,
    MAX_IPSET_NAME_LENGTH,
    format_state_flags,
    format_tcp_flag_set,
    is_true,
    parse_bool,
    render,
    render_ipset_flags,
    render_tcp_flags,
    render_value,
)

__all__ = [
    'MAX_IPSET_FLAGS',
    'MAX_IPSET_NAME_LENGTH',
    'BaseCompiler',
    'describe_rule',
    'format_state_flags',
    'format_tcp_flag_set',
    'is_true',
    'parse_bool',
    'render',
    'render_ipset_flags',
    'render_tcp_flags',
    'render_value',
]
