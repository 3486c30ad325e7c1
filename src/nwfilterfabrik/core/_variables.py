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

"""Iteration over all combinations of a rule's multi-valued variables."""

from __future__ import annotations

import itertools
from collections.abc import Iterator, Mapping, Sequence

from ._exceptions import CompileError


def _values(variables: Mapping[str, str | Sequence[str]], name: str) -> list[str]:
    try:
        raw = variables[name]
    except KeyError:
        raise CompileError(f"cannot find value for variable '{name}'") from None
    if isinstance(raw, str):
        return [raw]
    values = [str(v) for v in raw]
    if not values:
        raise CompileError(f"variable '{name}' has no values")
    return values


class VariableCombinations:
    """Cartesian product over the variables referenced by one rule.

    Variables referenced without an index are iterated; every combination
    of their values yields one binding.  Variables referenced with a fixed
    index contribute that single element to every binding, keyed as
    ``NAME[index]``.  A rule without variable references yields exactly
    one empty binding.
    """

    def __init__(
        self,
        variables: Mapping[str, str | Sequence[str]],
        refs: Sequence[tuple[str, int | None]],
    ) -> None:
        self._iterated: list[str] = []
        self._fixed: dict[str, str] = {}
        for name, index in refs:
            values = _values(variables, name)
            if index is None:
                if name not in self._iterated:
                    self._iterated.append(name)
                continue
            if not 0 <= index < len(values):
                raise CompileError(
                    f"index {index} is out of range for variable '{name}' "
                    f'with {len(values)} values'
                )
            self._fixed[f'{name}[{index}]'] = values[index]
        self._columns = [_values(variables, name) for name in self._iterated]

    def __iter__(self) -> Iterator[dict[str, str]]:
        for combination in itertools.product(*self._columns):
            binding = dict(zip(self._iterated, combination, strict=True))
            binding.update(self._fixed)
            yield binding

    def __len__(self) -> int:
        count = 1
        for column in self._columns:
            count *= len(column)
        return count
