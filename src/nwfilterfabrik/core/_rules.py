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

"""Filter rule model: protocols, directions, actions, header-field matchers.

A :class:`Rule` is immutable.  Each header field a rule matches on is
described by a :class:`Matcher` that either carries a literal value or
references a named variable which is resolved per compilation pass.
"""

from __future__ import annotations

import dataclasses
import enum
import types
from collections.abc import Mapping
from typing import Any

from ._command import Layer
from ._exceptions import CompileError

RULE_PRIORITY_MIN = -1000
RULE_PRIORITY_MAX = 1000
DEFAULT_RULE_PRIORITY = 500


class Protocol(enum.StrEnum):
    """Protocol tag of a rule; selects the backend and the field table."""

    MAC = 'mac'
    VLAN = 'vlan'
    STP = 'stp'
    ARP = 'arp'
    RARP = 'rarp'
    IP = 'ip'
    IPV6 = 'ipv6'
    TCP = 'tcp'
    UDP = 'udp'
    UDPLITE = 'udplite'
    ESP = 'esp'
    AH = 'ah'
    SCTP = 'sctp'
    ICMP = 'icmp'
    IGMP = 'igmp'
    ALL = 'all'
    TCP_IPV6 = 'tcp-ipv6'
    UDP_IPV6 = 'udp-ipv6'
    UDPLITE_IPV6 = 'udplite-ipv6'
    ESP_IPV6 = 'esp-ipv6'
    AH_IPV6 = 'ah-ipv6'
    SCTP_IPV6 = 'sctp-ipv6'
    ICMPV6 = 'icmpv6'
    ALL_IPV6 = 'all-ipv6'
    NONE = 'none'

    @property
    def is_ethernet(self) -> bool:
        return self in _ETHERNET_PROTOCOLS

    @property
    def layer(self) -> Layer:
        if self.is_ethernet:
            return Layer.ETHERNET
        if self in _IPV6_PROTOCOLS:
            return Layer.IPV6
        return Layer.IPV4

    @property
    def uses_ipv6_addresses(self) -> bool:
        return self is Protocol.IPV6 or self in _IPV6_PROTOCOLS


_ETHERNET_PROTOCOLS = frozenset(
    {
        Protocol.MAC,
        Protocol.VLAN,
        Protocol.STP,
        Protocol.ARP,
        Protocol.RARP,
        Protocol.IP,
        Protocol.IPV6,
        Protocol.NONE,
    }
)

_IPV6_PROTOCOLS = frozenset(
    {
        Protocol.TCP_IPV6,
        Protocol.UDP_IPV6,
        Protocol.UDPLITE_IPV6,
        Protocol.ESP_IPV6,
        Protocol.AH_IPV6,
        Protocol.SCTP_IPV6,
        Protocol.ICMPV6,
        Protocol.ALL_IPV6,
    }
)


class Direction(enum.StrEnum):
    """Traffic direction as seen from the VM."""

    IN = 'in'
    OUT = 'out'
    INOUT = 'inout'


class RuleAction(enum.StrEnum):
    ACCEPT = 'accept'
    DROP = 'drop'
    REJECT = 'reject'
    RETURN = 'return'
    CONTINUE = 'continue'
    JUMP = 'jump'

    @property
    def target(self) -> str:
        """Jump target name used by both backends."""
        return self.value.upper()


class ConnState(enum.StrEnum):
    """Connection tracking states, in rendering order."""

    NEW = 'NEW'
    ESTABLISHED = 'ESTABLISHED'
    RELATED = 'RELATED'
    INVALID = 'INVALID'
    NONE = 'NONE'


class TcpFlag(enum.StrEnum):
    """TCP header flags, in rendering order."""

    SYN = 'SYN'
    ACK = 'ACK'
    URG = 'URG'
    PSH = 'PSH'
    FIN = 'FIN'
    RST = 'RST'


class DataType(enum.Enum):
    IPADDR = 'ipaddr'
    IPV6ADDR = 'ipv6addr'
    IPMASK = 'ipmask'
    IPV6MASK = 'ipv6mask'
    MACADDR = 'macaddr'
    MACMASK = 'macmask'
    UINT8 = 'uint8'
    UINT8_HEX = 'uint8_hex'
    UINT16 = 'uint16'
    UINT16_HEX = 'uint16_hex'
    UINT32 = 'uint32'
    UINT32_HEX = 'uint32_hex'
    IPSETNAME = 'ipsetname'
    IPSETFLAGS = 'ipsetflags'
    BOOLEAN = 'boolean'
    STRING = 'string'
    TCP_FLAGS = 'tcpflags'

    @property
    def hex_variant(self) -> DataType:
        return _HEX_VARIANTS.get(self, self)


_HEX_VARIANTS = {
    DataType.UINT8: DataType.UINT8_HEX,
    DataType.UINT16: DataType.UINT16_HEX,
    DataType.UINT32: DataType.UINT32_HEX,
}


class HeaderField(enum.StrEnum):
    """Names of the header fields a rule can match on."""

    # Ethernet header
    SRC_MAC_ADDR = 'srcmacaddr'
    SRC_MAC_MASK = 'srcmacmask'
    DST_MAC_ADDR = 'dstmacaddr'
    DST_MAC_MASK = 'dstmacmask'

    # mac
    PROTOCOL_ID = 'protocolid'

    # vlan
    VLAN_ID = 'vlanid'
    VLAN_ENCAP = 'encap-protocol'

    # stp
    STP_TYPE = 'stp-type'
    STP_FLAGS = 'stp-flags'
    ROOT_PRIORITY = 'root-priority'
    ROOT_PRIORITY_HI = 'root-priority-hi'
    ROOT_ADDRESS = 'root-address'
    ROOT_ADDRESS_MASK = 'root-address-mask'
    ROOT_COST = 'root-cost'
    ROOT_COST_HI = 'root-cost-hi'
    SENDER_PRIORITY = 'sender-priority'
    SENDER_PRIORITY_HI = 'sender-priority-hi'
    SENDER_ADDRESS = 'sender-address'
    SENDER_ADDRESS_MASK = 'sender-address-mask'
    PORT = 'port'
    PORT_HI = 'port-hi'
    AGE = 'age'
    AGE_HI = 'age-hi'
    MAX_AGE = 'max-age'
    MAX_AGE_HI = 'max-age-hi'
    HELLO_TIME = 'hello-time'
    HELLO_TIME_HI = 'hello-time-hi'
    FORWARD_DELAY = 'forward-delay'
    FORWARD_DELAY_HI = 'forward-delay-hi'

    # arp / rarp
    HW_TYPE = 'hwtype'
    OPCODE = 'opcode'
    PROTOCOL_TYPE = 'protocoltype'
    ARP_SRC_IP_ADDR = 'arpsrcipaddr'
    ARP_SRC_IP_MASK = 'arpsrcipmask'
    ARP_DST_IP_ADDR = 'arpdstipaddr'
    ARP_DST_IP_MASK = 'arpdstipmask'
    ARP_SRC_MAC_ADDR = 'arpsrcmacaddr'
    ARP_DST_MAC_ADDR = 'arpdstmacaddr'
    GRATUITOUS = 'gratuitous'

    # IP header
    SRC_IP_ADDR = 'srcipaddr'
    SRC_IP_MASK = 'srcipmask'
    DST_IP_ADDR = 'dstipaddr'
    DST_IP_MASK = 'dstipmask'
    SRC_IP_FROM = 'srcipfrom'
    SRC_IP_TO = 'srcipto'
    DST_IP_FROM = 'dstipfrom'
    DST_IP_TO = 'dstipto'
    IP_PROTOCOL = 'protocol'
    DSCP = 'dscp'
    CONNLIMIT_ABOVE = 'connlimit-above'
    IPSET = 'ipset'
    IPSET_FLAGS = 'ipsetflags'

    # ports
    SRC_PORT_START = 'srcportstart'
    SRC_PORT_END = 'srcportend'
    DST_PORT_START = 'dstportstart'
    DST_PORT_END = 'dstportend'

    # tcp / icmp
    TCP_FLAGS = 'tcp-flags'
    TCP_OPTION = 'tcp-option'
    ICMP_TYPE = 'icmp-type'
    ICMP_CODE = 'icmp-code'


F = HeaderField

FIELD_DATATYPES: dict[HeaderField, DataType] = {
    F.SRC_MAC_ADDR: DataType.MACADDR,
    F.SRC_MAC_MASK: DataType.MACMASK,
    F.DST_MAC_ADDR: DataType.MACADDR,
    F.DST_MAC_MASK: DataType.MACMASK,
    F.PROTOCOL_ID: DataType.UINT16_HEX,
    F.VLAN_ID: DataType.UINT16,
    F.VLAN_ENCAP: DataType.UINT16,
    F.STP_TYPE: DataType.UINT8,
    F.STP_FLAGS: DataType.UINT8,
    F.ROOT_PRIORITY: DataType.UINT16,
    F.ROOT_PRIORITY_HI: DataType.UINT16,
    F.ROOT_ADDRESS: DataType.MACADDR,
    F.ROOT_ADDRESS_MASK: DataType.MACMASK,
    F.ROOT_COST: DataType.UINT32,
    F.ROOT_COST_HI: DataType.UINT32,
    F.SENDER_PRIORITY: DataType.UINT16,
    F.SENDER_PRIORITY_HI: DataType.UINT16,
    F.SENDER_ADDRESS: DataType.MACADDR,
    F.SENDER_ADDRESS_MASK: DataType.MACMASK,
    F.PORT: DataType.UINT16,
    F.PORT_HI: DataType.UINT16,
    F.AGE: DataType.UINT16,
    F.AGE_HI: DataType.UINT16,
    F.MAX_AGE: DataType.UINT16,
    F.MAX_AGE_HI: DataType.UINT16,
    F.HELLO_TIME: DataType.UINT16,
    F.HELLO_TIME_HI: DataType.UINT16,
    F.FORWARD_DELAY: DataType.UINT16,
    F.FORWARD_DELAY_HI: DataType.UINT16,
    F.HW_TYPE: DataType.UINT16,
    F.OPCODE: DataType.UINT16,
    F.PROTOCOL_TYPE: DataType.UINT16,
    F.ARP_SRC_IP_ADDR: DataType.IPADDR,
    F.ARP_SRC_IP_MASK: DataType.IPMASK,
    F.ARP_DST_IP_ADDR: DataType.IPADDR,
    F.ARP_DST_IP_MASK: DataType.IPMASK,
    F.ARP_SRC_MAC_ADDR: DataType.MACADDR,
    F.ARP_DST_MAC_ADDR: DataType.MACADDR,
    F.GRATUITOUS: DataType.BOOLEAN,
    F.SRC_IP_ADDR: DataType.IPADDR,
    F.SRC_IP_MASK: DataType.IPMASK,
    F.DST_IP_ADDR: DataType.IPADDR,
    F.DST_IP_MASK: DataType.IPMASK,
    F.SRC_IP_FROM: DataType.IPADDR,
    F.SRC_IP_TO: DataType.IPADDR,
    F.DST_IP_FROM: DataType.IPADDR,
    F.DST_IP_TO: DataType.IPADDR,
    F.IP_PROTOCOL: DataType.UINT8,
    F.DSCP: DataType.UINT8,
    F.CONNLIMIT_ABOVE: DataType.UINT16,
    F.IPSET: DataType.IPSETNAME,
    F.IPSET_FLAGS: DataType.IPSETFLAGS,
    F.SRC_PORT_START: DataType.UINT16,
    F.SRC_PORT_END: DataType.UINT16,
    F.DST_PORT_START: DataType.UINT16,
    F.DST_PORT_END: DataType.UINT16,
    F.TCP_FLAGS: DataType.TCP_FLAGS,
    F.TCP_OPTION: DataType.UINT8,
    F.ICMP_TYPE: DataType.UINT8,
    F.ICMP_CODE: DataType.UINT8,
}

# Address fields switch to their IPv6 datatype for IPv6 protocols.
_IPV6_DATATYPES = {
    DataType.IPADDR: DataType.IPV6ADDR,
    DataType.IPMASK: DataType.IPV6MASK,
}
_IP_ADDRESS_FIELDS = frozenset(
    {
        F.SRC_IP_ADDR,
        F.SRC_IP_MASK,
        F.DST_IP_ADDR,
        F.DST_IP_MASK,
        F.SRC_IP_FROM,
        F.SRC_IP_TO,
        F.DST_IP_FROM,
        F.DST_IP_TO,
    }
)

_ETH_FIELDS = frozenset({F.SRC_MAC_ADDR, F.SRC_MAC_MASK, F.DST_MAC_ADDR, F.DST_MAC_MASK})
_STP_FIELDS = frozenset(
    {
        F.STP_TYPE,
        F.STP_FLAGS,
        F.ROOT_PRIORITY,
        F.ROOT_PRIORITY_HI,
        F.ROOT_ADDRESS,
        F.ROOT_ADDRESS_MASK,
        F.ROOT_COST,
        F.ROOT_COST_HI,
        F.SENDER_PRIORITY,
        F.SENDER_PRIORITY_HI,
        F.SENDER_ADDRESS,
        F.SENDER_ADDRESS_MASK,
        F.PORT,
        F.PORT_HI,
        F.AGE,
        F.AGE_HI,
        F.MAX_AGE,
        F.MAX_AGE_HI,
        F.HELLO_TIME,
        F.HELLO_TIME_HI,
        F.FORWARD_DELAY,
        F.FORWARD_DELAY_HI,
    }
)
_ARP_FIELDS = frozenset(
    {
        F.HW_TYPE,
        F.OPCODE,
        F.PROTOCOL_TYPE,
        F.ARP_SRC_IP_ADDR,
        F.ARP_SRC_IP_MASK,
        F.ARP_DST_IP_ADDR,
        F.ARP_DST_IP_MASK,
        F.ARP_SRC_MAC_ADDR,
        F.ARP_DST_MAC_ADDR,
        F.GRATUITOUS,
    }
)
_PORT_FIELDS = frozenset({F.SRC_PORT_START, F.SRC_PORT_END, F.DST_PORT_START, F.DST_PORT_END})
_BRIDGE_IP_FIELDS = frozenset(
    {F.SRC_IP_ADDR, F.SRC_IP_MASK, F.DST_IP_ADDR, F.DST_IP_MASK, F.IP_PROTOCOL}
)
_IP_LAYER_FIELDS = frozenset(
    {
        F.SRC_MAC_ADDR,
        F.SRC_IP_ADDR,
        F.SRC_IP_MASK,
        F.DST_IP_ADDR,
        F.DST_IP_MASK,
        F.SRC_IP_FROM,
        F.SRC_IP_TO,
        F.DST_IP_FROM,
        F.DST_IP_TO,
        F.DSCP,
        F.CONNLIMIT_ABOVE,
        F.IPSET,
        F.IPSET_FLAGS,
    }
)
_TCP_FIELDS = _IP_LAYER_FIELDS | _PORT_FIELDS | {F.TCP_FLAGS, F.TCP_OPTION}
_ICMP_FIELDS = _IP_LAYER_FIELDS | {F.ICMP_TYPE, F.ICMP_CODE}

PROTOCOL_FIELDS: dict[Protocol, frozenset[HeaderField]] = {
    Protocol.MAC: _ETH_FIELDS | {F.PROTOCOL_ID},
    Protocol.VLAN: _ETH_FIELDS | {F.VLAN_ID, F.VLAN_ENCAP},
    Protocol.STP: _ETH_FIELDS | _STP_FIELDS,
    Protocol.ARP: _ETH_FIELDS | _ARP_FIELDS,
    Protocol.RARP: _ETH_FIELDS | _ARP_FIELDS,
    Protocol.IP: _ETH_FIELDS | _BRIDGE_IP_FIELDS | _PORT_FIELDS | {F.DSCP},
    Protocol.IPV6: _ETH_FIELDS | _BRIDGE_IP_FIELDS | _PORT_FIELDS,
    Protocol.NONE: frozenset(),
    Protocol.TCP: _TCP_FIELDS,
    Protocol.TCP_IPV6: _TCP_FIELDS,
    Protocol.UDP: _IP_LAYER_FIELDS | _PORT_FIELDS,
    Protocol.UDP_IPV6: _IP_LAYER_FIELDS | _PORT_FIELDS,
    Protocol.SCTP: _IP_LAYER_FIELDS | _PORT_FIELDS,
    Protocol.SCTP_IPV6: _IP_LAYER_FIELDS | _PORT_FIELDS,
    Protocol.UDPLITE: _IP_LAYER_FIELDS,
    Protocol.UDPLITE_IPV6: _IP_LAYER_FIELDS,
    Protocol.ESP: _IP_LAYER_FIELDS,
    Protocol.ESP_IPV6: _IP_LAYER_FIELDS,
    Protocol.AH: _IP_LAYER_FIELDS,
    Protocol.AH_IPV6: _IP_LAYER_FIELDS,
    Protocol.IGMP: _IP_LAYER_FIELDS,
    Protocol.ALL: _IP_LAYER_FIELDS,
    Protocol.ALL_IPV6: _IP_LAYER_FIELDS,
    Protocol.ICMP: _ICMP_FIELDS,
    Protocol.ICMPV6: _ICMP_FIELDS,
}

del F


def datatype_for(protocol: Protocol, field: HeaderField) -> DataType:
    """Return the datatype a *field* carries for rules of *protocol*."""
    datatype = FIELD_DATATYPES[field]
    if protocol.uses_ipv6_addresses and field in _IP_ADDRESS_FIELDS:
        return _IPV6_DATATYPES[datatype]
    return datatype


@dataclasses.dataclass(frozen=True)
class Matcher:
    """One header-field match: a literal or a variable reference, maybe negated."""

    datatype: DataType
    value: Any = None
    var: str | None = None
    index: int | None = None
    negate: bool = False

    def __post_init__(self) -> None:
        if (self.value is None) == (self.var is None):
            raise CompileError('a matcher needs exactly one of a value or a variable')

    @property
    def var_key(self) -> str | None:
        """Key under which a variable binding carries this matcher's value."""
        if self.var is None:
            return None
        if self.index is None:
            return self.var
        return f'{self.var}[{self.index}]'


@dataclasses.dataclass(frozen=True)
class Rule:
    """An immutable filter rule."""

    protocol: Protocol
    direction: Direction = Direction.INOUT
    action: RuleAction = RuleAction.ACCEPT
    priority: int = DEFAULT_RULE_PRIORITY
    matches: Mapping[HeaderField, Matcher] = dataclasses.field(default_factory=dict)
    state_match: bool = True
    state: frozenset[ConnState] | None = None
    comment: str | None = None
    jump_chain: str | None = None

    def __post_init__(self) -> None:
        if not RULE_PRIORITY_MIN <= self.priority <= RULE_PRIORITY_MAX:
            raise CompileError(
                f'rule priority {self.priority} is outside '
                f'[{RULE_PRIORITY_MIN}, {RULE_PRIORITY_MAX}]'
            )
        allowed = PROTOCOL_FIELDS[self.protocol]
        for field in self.matches:
            if field not in allowed:
                raise CompileError(
                    f"field '{field}' is not valid for protocol '{self.protocol}'"
                )
        if (self.action is RuleAction.JUMP) != (self.jump_chain is not None):
            raise CompileError('a jump target chain is required for, and only for, jump rules')
        object.__setattr__(self, 'matches', types.MappingProxyType(dict(self.matches)))
        if self.state is not None:
            object.__setattr__(self, 'state', frozenset(self.state))

    def has(self, field: HeaderField) -> bool:
        return field in self.matches

    def get(self, field: HeaderField) -> Matcher | None:
        return self.matches.get(field)

    def variable_refs(self) -> list[tuple[str, int | None]]:
        """Return the distinct (name, index) variable references, in field order."""
        refs: list[tuple[str, int | None]] = []
        for matcher in self.matches.values():
            if matcher.var is None:
                continue
            ref = (matcher.var, matcher.index)
            if ref not in refs:
                refs.append(ref)
        return refs


ROOT_CHAIN = 'root'

# Chain priorities used when a policy does not declare one; a sub-chain
# takes the priority of the protocol name its suffix starts with.
DEFAULT_CHAIN_PRIORITIES: dict[str, int] = {
    'stp': -810,
    'mac': -800,
    'vlan': -750,
    'ipv4': -700,
    'ipv6': -600,
    'arp': -500,
    'rarp': -400,
}
DEFAULT_ROOT_CHAIN_PRIORITY = 0


def default_chain_priority(suffix: str) -> int:
    for name, priority in DEFAULT_CHAIN_PRIORITIES.items():
        if suffix.startswith(name):
            return priority
    return DEFAULT_ROOT_CHAIN_PRIORITY


@dataclasses.dataclass(frozen=True)
class RuleInstance:
    """A rule placed into a chain, together with its variable values."""

    rule: Rule
    chain_suffix: str = ROOT_CHAIN
    chain_priority: int | None = None
    variables: Mapping[str, Any] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.chain_priority is None:
            object.__setattr__(
                self, 'chain_priority', default_chain_priority(self.chain_suffix)
            )
        object.__setattr__(self, 'variables', types.MappingProxyType(dict(self.variables)))

    @property
    def priority(self) -> int:
        return self.rule.priority

    @property
    def is_root(self) -> bool:
        return self.chain_suffix == ROOT_CHAIN
