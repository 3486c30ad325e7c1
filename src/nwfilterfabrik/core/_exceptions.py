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

"""Exception hierarchy shared by the compiler, executors and apply engine."""

from __future__ import annotations


class NWFilterError(Exception):
    """Base class for all nwfilterfabrik errors."""


class CompileError(NWFilterError):
    """A rule could not be rendered into backend commands.

    Raised for malformed or unrenderable matcher values, missing variable
    bindings and protocol/backend combinations that have no rendering.
    """


class ToolUnavailableError(NWFilterError):
    """A required backend tool is absent or failed its smoke test."""


class ExecutionError(NWFilterError):
    """An external command returned a non-zero status."""

    def __init__(self, command: str, output: str = '', status: int = 1) -> None:
        super().__init__(f"Failure to execute command '{command}' : '{output.strip()}'.")
        self.command = command
        self.output = output
        self.status = status


class ApplyError(NWFilterError):
    """Applying a rule generation to an interface failed and was rolled back."""

    def __init__(self, ifname: str, output: str) -> None:
        super().__init__(
            f'Some rules could not be created for interface {ifname}: {output}'
        )
        self.ifname = ifname
        self.output = output


class EnvironmentWarning(UserWarning):
    """Filtering was applied but the host setup may render it ineffective."""
