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

"""Driver infrastructure: probing, ordering, execution and the apply engine."""

from ._engine import ApplyResult, ApplyState, EbiptablesDriver
from ._executor import (
    EXEC_LOCK,
    BatchScriptExecutor,
    DiscreteRuleExecutor,
    Executor,
    create_executor,
)
from ._jinja2_template import Jinja2Template
from ._probe import BridgeNfCallChecker, EnvironmentProber, ctdir_status, parse_version
from ._process import ProcessRunner, SubprocessRunner
from ._scheduler import (
    EthernetSchedule,
    ScheduledItem,
    collect_chain_priorities,
    effective_priority,
    interleave,
    schedule_ethernet,
    sort_rule_instances,
)

__all__ = [
    'EXEC_LOCK',
    'ApplyResult',
    'ApplyState',
    'BatchScriptExecutor',
    'BridgeNfCallChecker',
    'DiscreteRuleExecutor',
    'EbiptablesDriver',
    'EnvironmentProber',
    'EthernetSchedule',
    'Executor',
    'Jinja2Template',
    'ProcessRunner',
    'ScheduledItem',
    'SubprocessRunner',
    'collect_chain_priorities',
    'create_executor',
    'ctdir_status',
    'effective_priority',
    'interleave',
    'parse_version',
    'schedule_ethernet',
    'sort_rule_instances',
]
