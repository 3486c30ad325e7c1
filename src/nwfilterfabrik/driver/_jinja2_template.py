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

"""Jinja2 rendering of the generated shell scripts.

Templates live in the package's ``resources/templates/<kind>/``
directory.  A directory passed as *override_dir* is searched first, so a
site can replace a script without touching the installed package.  The
``shell_quote`` filter is available in every template.
"""

from __future__ import annotations

import importlib.resources
from pathlib import Path

import jinja2

from nwfilterfabrik.core import shell_quote

USER_TEMPLATE_DIR = Path.home() / 'nwfilterfabrik' / 'templates'


def package_template_dir(kind: str) -> Path:
    return Path(str(importlib.resources.files('nwfilterfabrik') / 'resources' / 'templates' / kind))


class Jinja2Template:
    """A script template of one *kind* (``sh``), looked up by file name."""

    def __init__(
        self,
        kind: str,
        template_name: str,
        override_dir: Path | None = USER_TEMPLATE_DIR,
    ) -> None:
        search_paths = [package_template_dir(kind)]
        if override_dir is not None and (Path(override_dir) / kind).is_dir():
            search_paths.insert(0, Path(override_dir) / kind)

        env = jinja2.Environment(
            loader=jinja2.FileSystemLoader([str(p) for p in search_paths]),
            undefined=jinja2.StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        env.filters['shell_quote'] = shell_quote
        self.name = template_name
        self._template = env.get_template(template_name)

    def render(self, context: dict) -> str:
        return self._template.render(context)
