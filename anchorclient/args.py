# Copyright (C) 2017 The timeanchor developers
#
# This file is part of timeanchor.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of timeanchor including this file, may be copied,
# modified, propagated, or distributed except according to the terms contained
# in the LICENSE file.

import argparse
import logging
import os
import socket
import sys

import appdirs

import anchorclient
import anchorclient.cache
import anchorclient.cmds

from timeanchor.client import Configuration, DEFAULT_WHITELIST

DEFAULT_CACHE_PATH = appdirs.user_cache_dir('timeanchor')
DEFAULT_CONFIG_PATH = os.path.join(appdirs.user_config_dir('timeanchor'), 'timeanchor.conf')

DEFAULT_SOCKS5_PORT = 1080

# command line options that override the config file when given
CONFIG_OVERRIDES = ('btc_net', 'bitcoin_node', 'explorer_url', 'm', 'timeout')


def _add_general_options(parser):
    parser.add_argument('--version', action='version', version='v%s' % anchorclient.__version__)
    parser.add_argument('-q', '--quiet', action='count', default=0,
                        help='Print less. May be repeated.')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Print more. May be repeated, and combined with -q.')
    parser.add_argument('--config', dest='config_path', default=DEFAULT_CONFIG_PATH,
                        help='INI file with calendar, whitelist and Bitcoin settings. Default: %(default)s')
    parser.add_argument('-w', '--wait', action='store_true', default=False,
                        help='Keep retrying until the timestamp is complete, '
                             'rather than giving up after one attempt.')
    # retrying more often only loads the calendars
    parser.add_argument('--wait-interval', type=int, default=30, help=argparse.SUPPRESS)
    parser.add_argument('--socks5-proxy', metavar='HOST[:PORT]',
                        help='Send all traffic, DNS lookups included, through this SOCKS5 proxy. '
                             'The port defaults to %d.' % DEFAULT_SOCKS5_PORT)

def _add_calendar_options(parser):
    group = parser.add_mutually_exclusive_group()
    group.add_argument('-l', '--whitelist', metavar='URL', action='append', default=[],
                       help='Calendar URL (globs allowed) that pending attestations may be '
                            'upgraded from. May be repeated. Default: %s' % ', '.join(DEFAULT_WHITELIST))
    group.add_argument('--no-remote-calendars', dest='whitelist', action='store_const', const=None,
                       help='Never contact the calendars named in timestamps.')

    group = parser.add_mutually_exclusive_group()
    group.add_argument('--cache', dest='cache_path', default=DEFAULT_CACHE_PATH,
                       help='Directory of the local timestamp cache. Default: %(default)s')
    group.add_argument('--no-cache', dest='cache_path', action='store_const', const=None,
                       help='Run without the timestamp cache.')

def _add_bitcoin_options(parser):
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--btc-testnet', dest='btc_net', action='store_const', const='testnet', default=None,
                       help='Verify against Bitcoin testnet.')
    group.add_argument('--btc-regtest', dest='btc_net', action='store_const', const='regtest',
                       help='Verify against Bitcoin regtest.')
    group.add_argument('--no-bitcoin', dest='use_bitcoin', action='store_false', default=True,
                       help="Don't check Bitcoin attestations at all.")

    parser.add_argument('--bitcoin-node', metavar='URL',
                        help='Get block headers from this Bitcoin Core RPC URL instead of a block explorer.')
    parser.add_argument('--explorer', metavar='URL', dest='explorer_url',
                        help='Esplora-compatible block explorer API to get block headers from.')


def _add_stamp_command(subparsers):
    parser = subparsers.add_parser('stamp', aliases=['s'], help='Timestamp files')
    parser.add_argument('-c', '--calendar', metavar='URL', dest='calendar_urls', action='append', default=[],
                        help='Submit to this calendar instead of the configured ones. May be repeated.')
    parser.add_argument('-m', type=int,
                        help='How many calendars must reply for stamping to succeed. Default: 2')
    parser.add_argument('--timeout', type=int,
                        help='Seconds to wait for calendars to reply. Default: 5')
    parser.add_argument('files', metavar='FILE', type=argparse.FileType('rb'), nargs='*',
                        help='Files to timestamp; standard input if none are given. '
                             'Each proof is written to FILE.ots')
    parser.set_defaults(cmd_func=anchorclient.cmds.stamp_command)

def _add_upgrade_command(subparsers):
    parser = subparsers.add_parser('upgrade', aliases=['u'],
                                   help='Complete pending timestamps so they can be verified locally')
    parser.add_argument('-c', '--calendar', metavar='URL', dest='calendar_urls', action='append', default=[],
                        help='Ask this calendar instead of the ones named in the timestamp. May be repeated.')
    parser.add_argument('-n', '--dry-run', action='store_true', default=False,
                        help="Report what would change, but leave the files alone.")
    parser.add_argument('files', metavar='FILE', type=argparse.FileType('rb'), nargs='+',
                        help='Timestamps to upgrade; the original is kept as FILE.bak')
    parser.set_defaults(cmd_func=anchorclient.cmds.upgrade_command)

def _add_verify_command(subparsers):
    parser = subparsers.add_parser('verify', aliases=['v'], help='Verify a timestamp')
    target = parser.add_mutually_exclusive_group()
    target.add_argument('-f', metavar='FILE', dest='target_fd', type=argparse.FileType('rb'),
                        help='File the timestamp is for. Default: TIMESTAMP without .ots')
    target.add_argument('-d', metavar='DIGEST', dest='hex_digest',
                        help='Hex digest the timestamp is for, instead of a file')
    parser.add_argument('timestamp_fd', metavar='TIMESTAMP', type=argparse.FileType('rb'),
                        help='Timestamp file')
    parser.set_defaults(cmd_func=anchorclient.cmds.verify_command)

def _add_info_command(subparsers):
    parser = subparsers.add_parser('info', aliases=['i'], help='Show the contents of a timestamp')
    parser.add_argument('file', metavar='FILE', type=argparse.FileType('rb'),
                        help='Timestamp file')
    parser.set_defaults(cmd_func=anchorclient.cmds.info_command)


def make_arg_parser():
    parser = argparse.ArgumentParser(description='Create, upgrade and verify Bitcoin-anchored timestamps.')
    _add_general_options(parser)
    _add_calendar_options(parser)
    _add_bitcoin_options(parser)

    subparsers = parser.add_subparsers(title='Subcommands')
    for add_command in (_add_stamp_command, _add_upgrade_command, _add_verify_command, _add_info_command):
        add_command(subparsers)
    return parser


def setup_socks5_proxy(args):
    """Route every socket through args.socks5_proxy"""
    try:
        import socks
    except ImportError as exp:
        logging.error("SOCKS5 proxy support needs PySocks: %s" % exp)
        sys.exit(1)

    host, sep, port = args.socks5_proxy.partition(':')
    if not sep:
        port = DEFAULT_SOCKS5_PORT
    elif port.isdigit():
        port = int(port)
    else:
        args.parser.error("SOCKS5 proxy port must be a number; got %r" % port)

    socks.set_default_proxy(socks.SOCKS5, host, port)
    socket.socket = socks.socksocket

    # resolve names on the proxy side too
    def create_connection(address, timeout=None, source_address=None):
        sock = socks.socksocket()
        if timeout is not None:
            sock.settimeout(timeout)
        sock.connect(address)
        return sock
    socket.create_connection = create_connection


def make_configuration(args):
    """Configuration from the config file, with command line options on top"""
    overrides = {'wait': args.wait, 'wait_interval': args.wait_interval}

    # an empty list is the default; None is --no-remote-calendars
    if args.whitelist != []:
        overrides['whitelist'] = args.whitelist

    overrides.update((name, getattr(args, name)) for name in CONFIG_OVERRIDES
                     if getattr(args, name, None) is not None)

    try:
        return Configuration.from_file(args.config_path, **overrides)
    except ValueError as exp:
        args.parser.error("Invalid configuration: %s" % exp)


def handle_common_options(args, parser):
    args.parser = parser
    args.verbosity = args.verbose - args.quiet

    if args.cache_path is not None:
        args.cache_path = os.path.normpath(os.path.expanduser(args.cache_path))
    try:
        args.cache = anchorclient.cache.TimestampCache(args.cache_path)
    except (anchorclient.cache.CacheVersionError, OSError) as exp:
        logging.error("Can't use timestamp cache %r: %s" % (args.cache_path, exp))
        sys.exit(1)

    if args.socks5_proxy is not None:
        setup_socks5_proxy(args)

    args.config = make_configuration(args)
    return args


def parse_anchor_args(raw_args):
    parser = make_arg_parser()
    return handle_common_options(parser.parse_args(raw_args), parser)
