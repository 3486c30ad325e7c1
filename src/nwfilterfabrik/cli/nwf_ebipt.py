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

"""CLI entry point for the ebtables/iptables interface filter driver."""

import argparse
import logging
import platform
import sys

import yaml

import nwfilterfabrik
from nwfilterfabrik.core import (
    ExecutorKind,
    NWFilterError,
    PolicyReader,
    ToolConfig,
    shell_quote,
)
from nwfilterfabrik.core.options import load_options
from nwfilterfabrik.driver import EbiptablesDriver, ctdir_status

__author__ = 'Linuxfabrik GmbH, Zurich/Switzerland'

DESCRIPTION = """nwfilterfabrik interface filter driver. Compiles a YAML filter policy into
ebtables, iptables and ip6tables rules and applies them to a VM interface,
replacing the previous rules of that interface without a gap."""

ACTIONS = (
    'apply',
    'teardown',
    'teardown-new',
    'teardown-old',
    'basic',
    'dhcp-only',
    'drop-all',
    'remove-basic',
)

logger = logging.getLogger(__name__)


class PrintingRunner:
    """Process runner that prints each command instead of running it."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout

    def run(self, argv, capture_output=True):
        print(' '.join(shell_quote(a) for a in argv), file=self.stream)
        return '', 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='nwf-ebipt',
        description=DESCRIPTION,
    )

    parser.add_argument(
        'action',
        choices=ACTIONS,
        help='operation to run on the interface',
    )

    parser.add_argument(
        'interface',
        nargs='?',
        default=None,
        help='name of the VM interface. Default: the interface named in the policy file',
    )

    parser.add_argument(
        '-c',
        '--config',
        default=None,
        dest='CONFIG',
        help='path to a driver options YAML file',
    )

    parser.add_argument(
        '--dhcp-server',
        action='append',
        default=[],
        dest='DHCP_SERVERS',
        help='IPv4 address of an allowed DHCP server (dhcp-only, repeatable)',
    )

    parser.add_argument(
        '-f',
        '--file',
        default=None,
        dest='FILE',
        help='path to the YAML filter policy (apply)',
    )

    parser.add_argument(
        '--mac',
        default=None,
        dest='MAC',
        help='MAC address of the VM interface (basic, dhcp-only)',
    )

    parser.add_argument(
        '-n',
        '--dry-run',
        action='store_true',
        dest='DRY_RUN',
        help='print the commands instead of running them',
    )

    parser.add_argument(
        '-v',
        '--verbose',
        action='count',
        default=0,
        dest='VERBOSE',
        help='verbose output (repeat for higher verbosity)',
    )

    parser.add_argument(
        '-V',
        '--version',
        action='version',
        version=f'%(prog)s: v{nwfilterfabrik.__version__} by {__author__}',
    )

    return parser.parse_args(argv)


def setup_logging(verbose):
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )


def dry_run_driver(options):
    """Driver printing the commands it would run for the configured tools."""
    tools = ToolConfig(
        ebtables=(options.path_ebtables,),
        iptables=(options.path_iptables,),
        ip6tables=(options.path_ip6tables,),
        executor=ExecutorKind.DISCRETE,
        ctdir=ctdir_status(platform.release()),
    )
    return EbiptablesDriver(tools, runner=PrintingRunner(), options=options)


def run_action(driver, args, policy):
    ifname = args.interface
    if args.action == 'apply':
        result = driver.apply_policy(ifname, policy.rules)
        for warning in result.warnings:
            print(f'Warning: {warning}', file=sys.stderr)
    elif args.action == 'teardown':
        driver.all_teardown(ifname)
    elif args.action == 'teardown-new':
        driver.tear_new_rules(ifname)
    elif args.action == 'teardown-old':
        driver.tear_old_rules(ifname)
    elif args.action == 'basic':
        driver.apply_basic_rules(ifname, args.MAC)
    elif args.action == 'dhcp-only':
        driver.apply_dhcp_only_rules(ifname, args.MAC, args.DHCP_SERVERS)
    elif args.action == 'drop-all':
        driver.apply_drop_all_rules(ifname)
    elif args.action == 'remove-basic':
        driver.remove_basic_rules(ifname)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.VERBOSE)

    policy = None
    if args.FILE:
        try:
            policy = PolicyReader().parse(args.FILE)
        except (OSError, ValueError, yaml.YAMLError, NWFilterError) as e:
            print(f'Error: failed to load policy from {args.FILE}: {e}', file=sys.stderr)
            return 1
    if args.action == 'apply' and policy is None:
        print('Error: apply needs a policy file (-f)', file=sys.stderr)
        return 1
    if args.interface is None and policy is not None:
        args.interface = policy.interface
    if not args.interface:
        print('Error: no interface given', file=sys.stderr)
        return 1
    if args.action in ('basic', 'dhcp-only') and not args.MAC:
        print(f'Error: {args.action} needs the MAC address of the interface (--mac)', file=sys.stderr)
        return 1

    try:
        options = load_options(args.CONFIG)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f'Error: failed to load options from {args.CONFIG}: {e}', file=sys.stderr)
        return 1

    try:
        if args.DRY_RUN:
            driver = dry_run_driver(options)
        else:
            driver = EbiptablesDriver.from_environment(options)
        run_action(driver, args, policy)
    except NWFilterError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    logger.info('%s done for %s', args.action, args.interface)
    return 0


if __name__ == '__main__':
    sys.exit(main())
