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

"""Executors: submit command sequences to the backend tools.

Both executors share one worklist loop.  Plain commands are collected
and handed to :meth:`Executor.run_commands` in order.  A command carrying
a query callback is run on its own; its output lines are passed to the
callback and the commands it returns run next, before the rest of the
worklist.

:class:`BatchScriptExecutor` runs consecutive plain commands as one shell
script, :class:`DiscreteRuleExecutor` starts one process per command
(required when passing commands through firewalld).
"""

from __future__ import annotations

import collections
import logging
import re
import threading
from collections.abc import Iterable, Sequence

import nwfilterfabrik
from nwfilterfabrik.core import (
    Command,
    ExecutionError,
    ExecutorKind,
    Layer,
    ToolConfig,
    ToolUnavailableError,
    shell_quote,
)
from nwfilterfabrik.driver._jinja2_template import Jinja2Template
from nwfilterfabrik.driver._process import ProcessRunner

logger = logging.getLogger(__name__)

# Serializes every submission to the kernel tables, process wide.
EXEC_LOCK = threading.RLock()

_FAILURE = re.compile(
    r"Failure to execute command '(?P<command>.*)' : '(?P<output>.*)'\.\s*\Z",
    re.DOTALL,
)


class Executor:
    """Base class: worklist handling and query execution."""

    kind: ExecutorKind

    def __init__(self, tools: ToolConfig, runner: ProcessRunner) -> None:
        self.tools = tools
        self.runner = runner

    def argv(self, command: Command) -> list[str]:
        tool = self.tools.tool(command.layer)
        if tool is None:
            raise ToolUnavailableError(f'no tool available for layer {command.layer.value}')
        return [*tool, *command.args]

    def apply(self, commands: Iterable[Command]) -> None:
        """Execute *commands* in order, expanding query results depth-first.

        Raises :class:`~nwfilterfabrik.core.ExecutionError` on the first
        failing command whose errors are not ignored.
        """
        with EXEC_LOCK:
            worklist = collections.deque(commands)
            pending: list[Command] = []
            while worklist:
                command = worklist.popleft()
                if command.query is None:
                    pending.append(command)
                    continue
                if pending:
                    self.run_commands(pending)
                    pending = []
                lines = self.run_query(command)
                if lines is None:
                    continue
                follow_up = list(command.query(lines))
                logger.debug('Query %s yields %d commands', command, len(follow_up))
                worklist.extendleft(reversed(follow_up))
            if pending:
                self.run_commands(pending)

    def run_query(self, command: Command) -> list[str] | None:
        """Run a query on its own; ``None`` when it failed and errors are ignored."""
        argv = self.argv(command)
        output, status = self.runner.run(argv, True)
        if status != 0:
            if command.ignore_errors:
                logger.debug('Ignoring failed query %s: %s', command, output.strip())
                return None
            raise ExecutionError(' '.join(shell_quote(a) for a in argv), output, status)
        return output.splitlines()

    def run_commands(self, commands: Sequence[Command]) -> None:
        raise NotImplementedError


class DiscreteRuleExecutor(Executor):
    """Runs every command as its own process."""

    kind = ExecutorKind.DISCRETE

    def run_commands(self, commands: Sequence[Command]) -> None:
        for command in commands:
            argv = self.argv(command)
            output, status = self.runner.run(argv, True)
            if status == 0:
                continue
            if command.ignore_errors:
                logger.debug('Ignoring failure of %s: %s', command, output.strip())
                continue
            raise ExecutionError(' '.join(shell_quote(a) for a in argv), output, status)


class BatchScriptExecutor(Executor):
    """Runs consecutive commands as one shell script.

    The script binds each available tool to its shell variable (``EBT``,
    ``IPT``, ``IP6T``) and stops at the first failing checked command,
    reporting it on its output.
    """

    kind = ExecutorKind.BATCH

    def __init__(self, tools: ToolConfig, runner: ProcessRunner, shell: str = '/bin/sh') -> None:
        super().__init__(tools, runner)
        self.shell = shell
        self._template = Jinja2Template('sh', 'batch.sh.j2')

    def render_script(self, commands: Sequence[Command]) -> str:
        context = {
            'version': nwfilterfabrik.__version__,
            'tools': [
                (layer.shell_var, self.tools.tool(layer)) for layer in Layer if self.tools.has(layer)
            ],
            'commands': [
                {
                    'line': command.shell_line,
                    'display': ' '.join(shell_quote(a) for a in self.argv(command)),
                    'ignore_errors': command.ignore_errors,
                }
                for command in commands
            ],
        }
        return self._template.render(context)

    def run_commands(self, commands: Sequence[Command]) -> None:
        for command in commands:
            if not self.tools.has(command.layer):
                raise ToolUnavailableError(
                    f'no tool available for layer {command.layer.value}'
                )
        script = self.render_script(commands)
        logger.debug('Running batch of %d commands', len(commands))
        output, status = self.runner.run([self.shell, '-c', script], True)
        if status == 0:
            return
        m = _FAILURE.search(output)
        if m:
            raise ExecutionError(m.group('command'), m.group('output'), status)
        raise ExecutionError(f'{self.shell} -c <batch of {len(commands)} commands>', output, status)


def create_executor(tools: ToolConfig, runner: ProcessRunner, shell: str = '/bin/sh') -> Executor:
    """Return the executor *tools* asks for."""
    if tools.executor is ExecutorKind.DISCRETE:
        return DiscreteRuleExecutor(tools, runner)
    return BatchScriptExecutor(tools, runner, shell)
