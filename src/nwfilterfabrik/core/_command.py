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

"""Backend command representation shared by compilers and executors."""

from __future__ import annotations

import dataclasses
import enum
import re
from collections.abc import Callable, Sequence


class Layer(enum.Enum):
    """Filtering layer, one backend tool per layer."""

    ETHERNET = 'eb'
    IPV4 = 'ipv4'
    IPV6 = 'ipv6'

    @property
    def shell_var(self) -> str:
        """Name of the shell variable holding the tool in batch scripts."""
        return _SHELL_VARS[self]


_SHELL_VARS = {
    Layer.ETHERNET: 'EBT',
    Layer.IPV4: 'IPT',
    Layer.IPV6: 'IP6T',
}

_SAFE_WORD = re.compile(r'^[\w@%+=:,./!-]+$')


def shell_quote(word: str) -> str:
    """Quote *word* for a POSIX shell, leaving plain words untouched."""
    if word and _SAFE_WORD.match(word):
        return word
    return "'" + word.replace("'", "'\\''") + "'"


QueryCallback = Callable[[list[str]], Sequence['Command']]


@dataclasses.dataclass(frozen=True)
class Command:
    """One invocation of a layer's tool.

    ``args`` is the argument vector following the tool itself.  When
    ``ignore_errors`` is set a failure does not stop the submission.  A
    ``query`` callback receives the command's output lines and returns
    follow-up commands that are executed right after it.
    """

    layer: Layer
    args: tuple[str, ...]
    ignore_errors: bool = False
    query: QueryCallback | None = dataclasses.field(default=None, compare=False)

    @property
    def text(self) -> str:
        """The fully rendered argument line."""
        return ' '.join(shell_quote(a) for a in self.args)

    @property
    def shell_line(self) -> str:
        """The command as it appears in a batch script."""
        return f'${self.layer.shell_var} {self.text}'

    def __str__(self) -> str:
        return self.shell_line


def ebt(*args: str, ignore_errors: bool = False, query: QueryCallback | None = None) -> Command:
    """Build an ebtables command in the nat table."""
    return Command(Layer.ETHERNET, ('-t', 'nat', *args), ignore_errors, query)


def ipt(
    layer: Layer,
    *args: str,
    ignore_errors: bool = False,
    query: QueryCallback | None = None,
) -> Command:
    """Build an iptables or ip6tables command."""
    return Command(layer, tuple(args), ignore_errors, query)
