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

"""ebtables backend: bridge-layer chains and rule printing."""

from ._chains import (
    MAC_BGA,
    PROTOCOL_CHAINS,
    ProtocolChain,
    chain_name,
    create_tmp_root_chain,
    create_tmp_sub_chain,
    link_tmp_root_chain,
    list_child_chains,
    protocol_chain_for,
    remove_active_sub_chains,
    remove_root_chain,
    remove_sub_chains,
    remove_tmp_sub_chains,
    rename_tmp_root_chain,
    rename_tmp_sub_and_root_chains,
    root_chain_name,
    sub_chain_name,
    unlink_root_chain,
)
from ._print_rule import EbtablesRuleCompiler

__all__ = [
    'MAC_BGA',
    'PROTOCOL_CHAINS',
    'EbtablesRuleCompiler',
    'ProtocolChain',
    'chain_name',
    'create_tmp_root_chain',
    'create_tmp_sub_chain',
    'link_tmp_root_chain',
    'list_child_chains',
    'protocol_chain_for',
    'remove_active_sub_chains',
    'remove_root_chain',
    'remove_sub_chains',
    'remove_tmp_sub_chains',
    'rename_tmp_root_chain',
    'rename_tmp_sub_and_root_chains',
    'root_chain_name',
    'sub_chain_name',
    'unlink_root_chain',
]
