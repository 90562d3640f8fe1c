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

"""On-disk cache of timestamps

Every timestamp learnt from a calendar is kept, so that upgrading other
proofs sharing the same commitments doesn't need the network. Entries live
at <path>/ab/cd/ef/01/<hex commitment>, each holding a serialized timestamp
body.
"""

import logging
import os

from bitcoin.core import b2x

from timeanchor.core.serialize import DeserializationError, to_bytes, from_bytes
from timeanchor.core.timestamp import Timestamp

CACHE_VERSION = (1, 0)

FANOUT_LEVELS = 4

# shorter commitments can't fan out, longer ones make overlong filenames
MIN_COMMITMENT_LENGTH = FANOUT_LEVELS
MAX_COMMITMENT_LENGTH = 64


class CacheVersionError(Exception):
    """The cache directory was written by an incompatible version"""


def _read_version(version_path):
    with open(version_path) as fd:
        version = fd.read().strip()
    try:
        major, minor = map(int, version.split('.'))
    except ValueError:
        raise CacheVersionError("Unknown timestamp cache version %r" % version)
    return major, minor


class TimestampCache:
    """Timestamps by commitment, merged on write

    A path of None gives a cache that is always empty and never saves
    anything.
    """

    def __init__(self, path):
        self.path = path
        if path is None:
            return

        version_path = os.path.join(path, 'version')
        try:
            major, minor = _read_version(version_path)
        except FileNotFoundError:
            os.makedirs(path, exist_ok=True)
            with open(version_path, 'w') as fd:
                fd.write('%d.%d\n' % CACHE_VERSION)
            return

        if major != CACHE_VERSION[0]:
            raise CacheVersionError("Unsupported timestamp cache version %d.%d" % (major, minor))

    def _usable(self, commitment):
        return self.path is not None and MIN_COMMITMENT_LENGTH <= len(commitment) <= MAX_COMMITMENT_LENGTH

    def _entry_path(self, commitment):
        hex_commitment = b2x(commitment)
        fanout = [hex_commitment[2*i:2*i + 2] for i in range(FANOUT_LEVELS)]
        return os.path.join(self.path, *fanout, hex_commitment)

    def __contains__(self, commitment):
        try:
            self[commitment]
        except KeyError:
            return False
        return True

    def __getitem__(self, commitment):
        if not self._usable(commitment):
            raise KeyError(commitment)

        try:
            with open(self._entry_path(commitment), 'rb') as fd:
                serialized = fd.read()
        except FileNotFoundError:
            raise KeyError(commitment)

        try:
            return from_bytes(serialized, Timestamp.deserialize, commitment)
        except DeserializationError as exp:
            logging.warning("Ignoring corrupt cache entry for %s: %s" % (b2x(commitment), exp))
            raise KeyError(commitment)

    def merge(self, new_timestamp):
        """Merge a timestamp into the entry for its commitment"""
        if not self._usable(new_timestamp.msg):
            return

        try:
            timestamp = self[new_timestamp.msg]
        except KeyError:
            timestamp = Timestamp(new_timestamp.msg)
        timestamp.merge(new_timestamp)

        path = self._entry_path(timestamp.msg)
        os.makedirs(os.path.dirname(path), exist_ok=True)

        # readers must never see a partly written entry
        tmp_path = path + '.tmp'
        with open(tmp_path, 'wb') as fd:
            fd.write(to_bytes(timestamp))
        os.replace(tmp_path, path)
