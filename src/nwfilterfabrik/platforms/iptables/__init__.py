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

"""iptables/ip6tables backend: base and root chains, rule printing."""

from ._chains import (
    BASE_CHAIN_LINKS,
    BASE_CHAINS,
    HOST_IN_CHAIN,
    VIRT_IN_CHAIN,
    VIRT_IN_POST_CHAIN,
    VIRT_OUT_CHAIN,
    clear_virt_in_post,
    create_tmp_root_chains,
    find_rule_position,
    has_physdev_in,
    link_tmp_root_chains,
    remove_root_chains,
    rename_tmp_root_chains,
    root_chain_name,
    root_chain_names,
    setup_base_chains,
    setup_virt_in_post,
    unlink_root_chains,
)
from ._print_rule import IptablesRuleCompiler, Leg

__all__ = [
    'BASE_CHAINS',
    'BASE_CHAIN_LINKS',
    'HOST_IN_CHAIN',
    'VIRT_IN_CHAIN',
    'VIRT_IN_POST_CHAIN',
    'VIRT_OUT_CHAIN',
    'IptablesRuleCompiler',
    'Leg',
    'clear_virt_in_post',
    'create_tmp_root_chains',
    'find_rule_position',
    'has_physdev_in',
    'link_tmp_root_chains',
    'remove_root_chains',
    'rename_tmp_root_chains',
    'root_chain_name',
    'root_chain_names',
    'setup_base_chains',
    'setup_virt_in_post',
    'unlink_root_chains',
]
