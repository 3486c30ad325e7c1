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

"""Process primitive used by the executors and the environment prober.

A runner never raises for a failing command: failure is reported as a
non-zero status together with whatever the command printed.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from typing import Protocol

logger = logging.getLogger(__name__)

STATUS_NOT_FOUND = 127


class ProcessRunner(Protocol):
    def run(self, argv: Sequence[str], capture_output: bool = True) -> tuple[str, int]:
        """Run *argv* and return its combined output and exit status."""
        ...


class SubprocessRunner:
    """Runs commands with :func:`subprocess.run`."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    def run(self, argv: Sequence[str], capture_output: bool = True) -> tuple[str, int]:
        logger.debug('Running %s', ' '.join(argv))
        try:
            proc = subprocess.run(
                list(argv),
                stdout=subprocess.PIPE if capture_output else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError:
            return f'{argv[0]}: command not found', STATUS_NOT_FOUND
        except subprocess.TimeoutExpired:
            return f'{argv[0]}: timed out after {self.timeout}s', 1
        return proc.stdout or '', proc.returncode
