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

"""Textual rendering of matcher values, one rule per datatype.

Literal values are validated and normalized (canonical addresses,
lower-case MACs, decimal or hex integers).  Values coming from a variable
binding are copied verbatim but must fit the print width of the datatype.
"""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable, Mapping

from nwfilterfabrik.core import CompileError, ConnState, DataType, Matcher, TcpFlag

MAX_IPSET_NAME_LENGTH = 31
MAX_IPSET_FLAGS = 6

_UINT_LIMITS = {
    DataType.UINT8: 0xFF,
    DataType.UINT8_HEX: 0xFF,
    DataType.UINT16: 0xFFFF,
    DataType.UINT16_HEX: 0xFFFF,
    DataType.UINT32: 0xFFFFFFFF,
    DataType.UINT32_HEX: 0xFFFFFFFF,
}
_HEX_DATATYPES = frozenset({DataType.UINT8_HEX, DataType.UINT16_HEX, DataType.UINT32_HEX})

# Longest text a variable value may have for each datatype.
_PRINT_WIDTH = {
    DataType.IPADDR: 15,
    DataType.IPV6ADDR: 45,
    DataType.IPMASK: 15,
    DataType.IPV6MASK: 45,
    DataType.MACADDR: 17,
    DataType.MACMASK: 17,
    DataType.UINT8: 10,
    DataType.UINT8_HEX: 10,
    DataType.UINT16: 10,
    DataType.UINT16_HEX: 10,
    DataType.UINT32: 10,
    DataType.UINT32_HEX: 10,
    DataType.IPSETNAME: MAX_IPSET_NAME_LENGTH,
    DataType.IPSETFLAGS: 4 * MAX_IPSET_FLAGS - 1,
    DataType.BOOLEAN: 5,
    DataType.STRING: 256,
    DataType.TCP_FLAGS: 64,
}

_MAC = re.compile(r'^[0-9a-fA-F]{1,2}([:-][0-9a-fA-F]{1,2}){5}$')


def _parse_uint(datatype: DataType, value) -> int:
    if isinstance(value, bool):
        raise CompileError(f'malformed number {value!r}')
    if isinstance(value, int):
        number = value
    else:
        try:
            number = int(str(value).strip(), 0)
        except ValueError:
            raise CompileError(f"malformed number '{value}'") from None
    if not 0 <= number <= _UINT_LIMITS[datatype]:
        raise CompileError(f'number {number} out of range for {datatype.value}')
    return number


def _render_mac(value) -> str:
    text = str(value).strip()
    if not _MAC.match(text):
        raise CompileError(f"malformed MAC address '{value}'")
    return ':'.join(f'{int(octet, 16):02x}' for octet in re.split(r'[:-]', text))


def _render_ipmask(value, version: int) -> str:
    bits = 32 if version == 4 else 128
    if isinstance(value, int) and not isinstance(value, bool):
        prefix = value
    else:
        text = str(value).strip()
        if text.isdigit():
            prefix = int(text)
        else:
            try:
                mask = int(ipaddress.IPv4Address(text) if version == 4 else ipaddress.IPv6Address(text))
            except ValueError:
                raise CompileError(f"malformed netmask '{value}'") from None
            host_bits = ~mask & ((1 << bits) - 1)
            if host_bits & (host_bits + 1):
                raise CompileError(f"non-contiguous netmask '{value}'")
            prefix = bits - host_bits.bit_length()
    if not 0 <= prefix <= bits:
        raise CompileError(f'prefix length {prefix} out of range')
    return str(prefix)


def _flag_list(value) -> list[str]:
    if isinstance(value, str):
        return [t.strip() for t in value.split(',') if t.strip()]
    return [str(t).strip() for t in value]


def render_ipset_flags(value, direction_in: bool) -> str:
    """Render ipset match flags for one direction.

    A ``src`` flag is rendered as ``dst`` when the rule is rendered for the
    reply direction, and a ``dst`` flag the other way around.
    """
    flags = _flag_list(value)
    if not flags or len(flags) > MAX_IPSET_FLAGS:
        raise CompileError(f"malformed ipset flags '{value}'")
    rendered = []
    for flag in flags:
        if flag not in ('src', 'dst'):
            raise CompileError(f"malformed ipset flag '{flag}'")
        is_src = flag == 'src'
        if is_src:
            rendered.append('dst' if direction_in else 'src')
        else:
            rendered.append('src' if direction_in else 'dst')
    return ','.join(rendered)


def render_value(datatype: DataType, value, *, as_hex: bool = False, direction_in: bool = False) -> str:
    """Render a literal *value* of *datatype* to its backend text."""
    if datatype in _UINT_LIMITS:
        number = _parse_uint(datatype, value)
        if as_hex or datatype in _HEX_DATATYPES:
            return f'0x{number:x}'
        return str(number)
    match datatype:
        case DataType.IPADDR:
            try:
                return str(ipaddress.IPv4Address(str(value).strip()))
            except ValueError:
                raise CompileError(f"malformed IPv4 address '{value}'") from None
        case DataType.IPV6ADDR:
            try:
                return str(ipaddress.IPv6Address(str(value).strip()))
            except ValueError:
                raise CompileError(f"malformed IPv6 address '{value}'") from None
        case DataType.MACADDR | DataType.MACMASK:
            return _render_mac(value)
        case DataType.IPMASK:
            return _render_ipmask(value, 4)
        case DataType.IPV6MASK:
            return _render_ipmask(value, 6)
        case DataType.IPSETNAME:
            name = str(value)
            if not name or len(name) > MAX_IPSET_NAME_LENGTH:
                raise CompileError(f"ipset name '{name}' is empty or too long")
            return name
        case DataType.IPSETFLAGS:
            return render_ipset_flags(value, direction_in)
        case DataType.BOOLEAN:
            return 'true' if parse_bool(value) else 'false'
        case DataType.STRING:
            return str(value)
        case DataType.TCP_FLAGS:
            return ' '.join(render_tcp_flags(value))
    raise CompileError(f'unknown datatype {datatype!r}')


def render(
    matcher: Matcher,
    binding: Mapping[str, str],
    *,
    as_hex: bool = False,
    direction_in: bool = False,
) -> str:
    """Render *matcher* using *binding* for variable references."""
    key = matcher.var_key
    if key is None:
        return render_value(matcher.datatype, matcher.value, as_hex=as_hex, direction_in=direction_in)
    try:
        value = str(binding[key])
    except KeyError:
        raise CompileError(f"cannot find value for variable '{key}'") from None
    if len(value) > _PRINT_WIDTH[matcher.datatype]:
        raise CompileError(f"Buffer too small to print variable '{key}' into")
    return value


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('true', 'yes', '1'):
        return True
    if text in ('false', 'no', '0'):
        return False
    raise CompileError(f"malformed boolean '{value}'")


def is_true(matcher: Matcher, binding: Mapping[str, str]) -> bool:
    """Evaluate a boolean matcher."""
    if matcher.var_key is None:
        return parse_bool(matcher.value)
    return parse_bool(render(matcher, binding))


def _parse_tcp_flag_set(text) -> frozenset[TcpFlag]:
    if not isinstance(text, str):
        try:
            return frozenset(TcpFlag(str(f).upper()) for f in text)
        except ValueError:
            raise CompileError(f"malformed TCP flags '{text}'") from None
    text = text.strip().upper()
    if text == 'ALL':
        return frozenset(TcpFlag)
    if text == 'NONE':
        return frozenset()
    try:
        return frozenset(TcpFlag(f.strip()) for f in text.split(','))
    except ValueError:
        raise CompileError(f"malformed TCP flags '{text}'") from None


def format_tcp_flag_set(flags: Iterable[TcpFlag]) -> str:
    flags = frozenset(flags)
    if not flags:
        return 'NONE'
    if flags == frozenset(TcpFlag):
        return 'ALL'
    return ','.join(f.value for f in TcpFlag if f in flags)


def render_tcp_flags(value) -> tuple[str, str]:
    """Render a TCP ``mask/flags`` pair as its two backend words."""
    if isinstance(value, str):
        mask, sep, flags = value.partition('/')
        if not sep:
            raise CompileError(f"malformed TCP flags '{value}', expected MASK/FLAGS")
    else:
        mask, flags = value
    return (
        format_tcp_flag_set(_parse_tcp_flag_set(mask)),
        format_tcp_flag_set(_parse_tcp_flag_set(flags)),
    )


def format_state_flags(states: Iterable[ConnState]) -> str:
    """Comma-joined connection states in their fixed order."""
    states = frozenset(states)
    if not states or states == {ConnState.NONE}:
        return ConnState.NONE.value
    return ','.join(s.value for s in ConnState if s in states and s is not ConnState.NONE)
