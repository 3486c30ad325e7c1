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

"""BaseCompiler: error reporting for the backend rule compilers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, NoReturn

from nwfilterfabrik.core import CompileError

if TYPE_CHECKING:
    from nwfilterfabrik.core import Rule

logger = logging.getLogger(__name__)


def describe_rule(rule: Rule) -> str:
    """Short human readable label of a rule for messages."""
    return f'{rule.protocol}/{rule.direction}/{rule.action} priority {rule.priority}'


class BaseCompiler:
    """Base class providing error reporting for the rule compilers.

    Errors are fatal: :meth:`error` raises
    :class:`~nwfilterfabrik.core.CompileError`.  Only the most recent
    message is kept, so a compiler shared by a long-lived driver does not
    grow with every rejected rule.
    """

    def __init__(self) -> None:
        self.last_error: str | None = None

    @staticmethod
    def _format(rule_or_msg, msg: str | None) -> str:
        if msg is None:
            return str(rule_or_msg)
        return f'Rule {describe_rule(rule_or_msg)}: {msg}'

    def error(self, rule_or_msg, msg: str | None = None) -> NoReturn:
        """Raise a compile error, optionally associated with a rule."""
        text = self._format(rule_or_msg, msg)
        self.last_error = text
        logger.debug('%s', text)
        raise CompileError(text)
