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

"""YAML reader for loading a filter policy into rule instances.

Example policy::

    interface: vnet0
    variables:
      IP: [10.0.0.1, 10.0.0.2]
    chains:
      ipv4: -700
    rules:
      - chain: ipv4
        direction: out
        action: accept
        protocol: ip
        match:
          srcipaddr: $IP
          dstipaddr: {value: 10.0.0.254, negate: true}
"""

import dataclasses
import logging
import pathlib
import re

import yaml

from ._rules import (
    DEFAULT_RULE_PRIORITY,
    ROOT_CHAIN,
    ConnState,
    DataType,
    Direction,
    HeaderField,
    Matcher,
    Protocol,
    Rule,
    RuleAction,
    RuleInstance,
    datatype_for,
    default_chain_priority,
)

logger = logging.getLogger(__name__)

_VAR_REF = re.compile(r'^\$(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?:\[(?P<index>\d+)\])?$')

# Symbolic names accepted for the ethertype of mac rules.
_ETHERTYPES = {
    'ipv4': 0x0800,
    'arp': 0x0806,
    'rarp': 0x8035,
    'ipv6': 0x86DD,
}

_INT_DATATYPES = frozenset(
    {
        DataType.UINT8,
        DataType.UINT16,
        DataType.UINT32,
        DataType.UINT8_HEX,
        DataType.UINT16_HEX,
        DataType.UINT32_HEX,
    }
)


class _PolicyLoader(yaml.SafeLoader):
    """SafeLoader without the YAML 1.1 base 60 numbers.

    ``52:54:00:12:34:56`` must stay a MAC address instead of turning into
    the integer 41135085296.
    """


_INT_TAG = 'tag:yaml.org,2002:int'
_FLOAT_TAG = 'tag:yaml.org,2002:float'

_PolicyLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in (_INT_TAG, _FLOAT_TAG)]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_PolicyLoader.add_implicit_resolver(
    _INT_TAG,
    re.compile(
        r'''^(?:[-+]?0b[0-1_]+
        |[-+]?0[0-7_]+
        |[-+]?(?:0|[1-9][0-9_]*)
        |[-+]?0x[0-9a-fA-F_]+)$''',
        re.X,
    ),
    list('-+0123456789'),
)
_PolicyLoader.add_implicit_resolver(
    _FLOAT_TAG,
    re.compile(
        r'''^(?:[-+]?(?:[0-9][0-9_]*)\.[0-9_]*(?:[eE][-+][0-9]+)?
        |\.[0-9][0-9_]*(?:[eE][-+][0-9]+)?
        |[-+]?\.(?:inf|Inf|INF)
        |\.(?:nan|NaN|NAN))$''',
        re.X,
    ),
    list('-+0123456789.'),
)


@dataclasses.dataclass
class Policy:
    """A parsed policy: the interface it targets and its rule instances."""

    interface: str | None
    rules: list[RuleInstance]


def _coerce_bool(value, what):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ('true', 'false'):
        return value.lower() == 'true'
    raise ValueError(f'{what} expects a boolean, got {value!r}')


class PolicyReader:
    """Parses a YAML policy file into a :class:`Policy`."""

    def parse(self, input_path):
        input_path = pathlib.Path(input_path)
        with input_path.open(encoding='utf-8') as f:
            data = yaml.load(f, Loader=_PolicyLoader)
        policy = self.parse_data(data or {})
        logger.debug('Loaded %d rules from %s', len(policy.rules), input_path)
        return policy

    def parse_data(self, data):
        if not isinstance(data, dict):
            raise ValueError('a policy must be a mapping')
        variables = {}
        for name, value in (data.get('variables') or {}).items():
            if isinstance(value, list):
                variables[name] = [str(v) for v in value]
            else:
                variables[name] = str(value)
        chain_priorities = {
            str(k): int(v) for k, v in (data.get('chains') or {}).items()
        }

        rules = []
        for position, rule_data in enumerate(data.get('rules') or []):
            try:
                rules.append(self._parse_rule(rule_data, variables, chain_priorities))
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f'rule {position}: {e}') from e
        return Policy(interface=data.get('interface'), rules=rules)

    def _parse_rule(self, rule_data, variables, chain_priorities):
        protocol = Protocol(rule_data['protocol'])
        matches = {}
        for key, spec in (rule_data.get('match') or {}).items():
            field = HeaderField(key)
            matches[field] = self._parse_matcher(protocol, field, spec)

        state = rule_data.get('state')
        if state is not None:
            if isinstance(state, str):
                state = state.split(',')
            state = frozenset(ConnState(s.strip().upper()) for s in state)

        rule = Rule(
            protocol=protocol,
            direction=Direction(rule_data.get('direction', Direction.INOUT)),
            action=RuleAction(rule_data.get('action', RuleAction.ACCEPT)),
            priority=int(rule_data.get('priority', DEFAULT_RULE_PRIORITY)),
            matches=matches,
            state_match=_coerce_bool(rule_data.get('statematch', True), 'statematch'),
            state=state,
            comment=rule_data.get('comment'),
            jump_chain=rule_data.get('jump'),
        )
        chain = str(rule_data.get('chain', ROOT_CHAIN))
        return RuleInstance(
            rule=rule,
            chain_suffix=chain,
            chain_priority=chain_priorities.get(chain, default_chain_priority(chain)),
            variables=variables,
        )

    def _parse_matcher(self, protocol, field, spec):
        negate = False
        if isinstance(spec, dict):
            negate = _coerce_bool(spec.get('negate', False), 'negate')
            if 'var' in spec:
                ref = f'${spec["var"]}'
                if spec.get('index') is not None:
                    ref = f'{ref}[{int(spec["index"])}]'
                spec = ref
            else:
                spec = spec['value']

        datatype = datatype_for(protocol, field)
        if isinstance(spec, str):
            m = _VAR_REF.match(spec)
            if m:
                index = m.group('index')
                return Matcher(
                    datatype,
                    var=m.group('name'),
                    index=int(index) if index is not None else None,
                    negate=negate,
                )
            if datatype in _INT_DATATYPES:
                if spec.lower() in _ETHERTYPES and field is HeaderField.PROTOCOL_ID:
                    spec = _ETHERTYPES[spec.lower()]
                elif spec.lower().startswith('0x'):
                    datatype = datatype.hex_variant
        return Matcher(datatype, value=spec, negate=negate)
