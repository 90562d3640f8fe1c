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

import binascii
import logging
import os
import sys

from bitcoin.core import b2x

from timeanchor.client import (create_timestamp, upgrade_timestamp, verify_timestamp,
                               is_timestamp_complete, StampError)
from timeanchor.core.notary import VerificationError
from timeanchor.core.op import OpSHA256
from timeanchor.core.serialize import BadMagicError, DeserializationError, to_bytes, from_bytes
from timeanchor.core.timestamp import DetachedTimestampFile, make_merkle_tree
from timeanchor.timestamp import nonce_timestamp


def fail(msg):
    logging.error(msg)
    sys.exit(1)


def read_timestamp_file(fd):
    """Timestamp file read from fd; exits if it isn't one"""
    try:
        return from_bytes(fd.read(), DetachedTimestampFile.deserialize)
    except BadMagicError:
        fail("Error! %r is not a timestamp file." % fd.name)
    except DeserializationError as exp:
        fail("Invalid timestamp file %r: %s" % (fd.name, exp))


def write_timestamp_file(path, detached_timestamp):
    """Write a timestamp file, never overwriting an existing one"""
    try:
        with open(path, 'xb') as fd:
            fd.write(to_bytes(detached_timestamp))
    except OSError as exp:
        fail("Could not write timestamp %r: %s" % (path, exp))


def stamp_command(args):
    if not args.files:
        args.files = [sys.stdin.buffer]

    file_timestamps = []
    for fd in args.files:
        try:
            file_timestamps.append(DetachedTimestampFile.from_fd(OpSHA256(), fd))
        except OSError as exp:
            # argparse already reported files that couldn't be opened
            fail("Could not read %r: %s" % (fd.name, exp))

    # one calendar submission covers every file
    tip = make_merkle_tree(nonce_timestamp(file_timestamp.timestamp) for file_timestamp in file_timestamps)

    try:
        create_timestamp(tip, args.calendar_urls or args.config.calendar_urls, args.config)
    except (StampError, ValueError) as exp:
        fail(str(exp))

    if args.wait:
        upgrade_timestamp(tip, args.config, cache=args.cache)
        logging.info("Timestamp complete; saving")

    for fd, file_timestamp in zip(args.files, file_timestamps):
        if fd is sys.stdin.buffer:
            sys.stdout.buffer.write(to_bytes(file_timestamp))
        else:
            write_timestamp_file(fd.name + '.ots', file_timestamp)


def upgrade_command(args):
    for stamp_fd in args.files:
        path = stamp_fd.name
        logging.debug("Upgrading %s" % path)
        with stamp_fd:
            detached_timestamp = read_timestamp_file(stamp_fd)

        changed = upgrade_timestamp(detached_timestamp.timestamp, args.config,
                                    cache=args.cache, calendar_urls=args.calendar_urls)

        if changed and not args.dry_run:
            backup_path = path + '.bak'
            if os.path.exists(backup_path):
                fail("Could not backup timestamp: %r already exists" % backup_path)

            logging.debug("Got new timestamp data; keeping the old timestamp as %r" % backup_path)
            try:
                os.rename(path, backup_path)
            except OSError as exp:
                fail("Could not backup timestamp: %s" % exp)
            write_timestamp_file(path, detached_timestamp)

        if not is_timestamp_complete(detached_timestamp.timestamp):
            logging.warning("Failed! Timestamp not complete")
            sys.exit(1)
        logging.info("Success! Timestamp complete")


def _target_digest(args, detached_timestamp):
    """Digest of whatever the user says the timestamp is for"""
    if args.hex_digest is not None:
        try:
            return binascii.unhexlify(args.hex_digest)
        except ValueError:
            args.parser.error('Digest must be hexadecimal')

    target_fd = args.target_fd
    if target_fd is None:
        stamp_path = args.timestamp_fd.name
        if not stamp_path.endswith('.ots'):
            args.parser.error("Can't guess the target file: timestamp filename does not end in .ots")

        logging.info("Assuming target filename is %r" % stamp_path[:-4])
        try:
            target_fd = open(stamp_path[:-4], 'rb')
        except OSError as exp:
            fail("Could not open target: %s" % exp)

    hash_op = detached_timestamp.file_hash_op
    logging.debug("Hashing file, algorithm %s" % hash_op.TAG_NAME)
    with target_fd:
        return hash_op.hash_fd(target_fd)


def verify_command(args):
    detached_timestamp = read_timestamp_file(args.timestamp_fd)

    digest = _target_digest(args, detached_timestamp)
    if digest != detached_timestamp.file_digest:
        logging.debug("Got digest %s, expected %s" % (b2x(digest), b2x(detached_timestamp.file_digest)))
        fail("File does not match original!")

    # the calendars may have completed pending attestations since the last upgrade
    upgrade_timestamp(detached_timestamp.timestamp, args.config, cache=args.cache)

    if not args.use_bitcoin:
        logging.warning("Not checking Bitcoin attestation; Bitcoin disabled")
        sys.exit(1)

    try:
        attested_time = verify_timestamp(detached_timestamp.timestamp, args.config)
    except VerificationError:
        sys.exit(1)

    if attested_time is None:
        logging.warning("Could not verify timestamp!")
        sys.exit(1)


def info_command(args):
    detached_timestamp = read_timestamp_file(args.file)

    print("File %s hash: %s" % (detached_timestamp.file_hash_op.TAG_NAME, b2x(detached_timestamp.file_digest)))
    print("Timestamp:")
    print(detached_timestamp.timestamp.str_tree(verbosity=args.verbosity))
