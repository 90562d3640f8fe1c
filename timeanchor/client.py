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

"""Creating, upgrading and verifying timestamps

Everything that talks to calendars or block explorers lives here. Which
calendars and explorer are used is decided by a Configuration, never by
globals, so that callers can point the client at their own servers.
"""

import binascii
import configparser
import logging
import os
import threading
import time

from queue import Queue, Empty

from bitcoin.core import b2x

import timeanchor
from timeanchor.calendar import RemoteCalendar, UrlWhitelist, CalendarError, CommitmentNotFoundError
from timeanchor.explorer import BlockExplorer, RpcBlockExplorer, ExplorerError
from timeanchor.core.notary import PendingAttestation, BitcoinBlockHeaderAttestation, VerificationError
from timeanchor.core.op import OpSHA256
from timeanchor.core.serialize import DeserializationError, to_bytes, from_bytes
from timeanchor.core.timestamp import Timestamp, DetachedTimestampFile
from timeanchor.timestamp import nonce_timestamp

DEFAULT_CALENDAR_URLS = ['https://a.pool.opentimestamps.org',
                         'https://b.pool.opentimestamps.org',
                         'https://a.pool.eternitywall.com']

DEFAULT_WHITELIST = ['https://*.calendar.opentimestamps.org',
                     'https://*.calendar.eternitywall.com']

DEFAULT_EXPLORER_URL = 'https://blockstream.info/api'

BTC_NETWORKS = ('mainnet', 'testnet', 'regtest')

default_conf = {'calendars': {'urls': '\n'.join(DEFAULT_CALENDAR_URLS),
                              'm': '2',
                              'timeout': '5'},
                'whitelist': {'urls': '\n'.join(DEFAULT_WHITELIST)},
                'bitcoin': {'explorer_url': DEFAULT_EXPLORER_URL,
                            'node': '',
                            'network': 'mainnet'}}


class StampError(Exception):
    """Not enough calendars accepted a timestamp"""


class Configuration:
    """Calendars, block explorer and policy used by the client

    whitelist is the list of calendar URL globs that pending attestations may
    send us to; None disables remote calendars entirely when upgrading.
    """

    def __init__(self, calendar_urls=None, explorer_url=DEFAULT_EXPLORER_URL,
                 bitcoin_node=None, btc_net='mainnet', whitelist=DEFAULT_WHITELIST,
                 m=2, timeout=5, wait=False, wait_interval=30, user_agent=None):
        if btc_net not in BTC_NETWORKS:
            raise ValueError("Unknown Bitcoin network %r; expected one of %s" % (btc_net, ', '.join(BTC_NETWORKS)))

        self.calendar_urls = list(DEFAULT_CALENDAR_URLS if calendar_urls is None else calendar_urls)

        if whitelist is not None and not isinstance(whitelist, UrlWhitelist):
            whitelist = UrlWhitelist(whitelist)
        self.whitelist = whitelist

        self.explorer_url = explorer_url
        self.bitcoin_node = bitcoin_node
        self.btc_net = btc_net
        self.m = m
        self.timeout = timeout
        self.wait = wait
        self.wait_interval = wait_interval
        self.user_agent = user_agent or "timeanchor/%s" % timeanchor.__version__

    @classmethod
    def from_file(cls, config_file=None, **kwargs):
        """Load a configuration from an INI file

        Missing files and settings fall back to the defaults; keyword
        arguments override the file.
        """
        parser = configparser.ConfigParser()
        parser.read_dict(default_conf)
        if config_file is not None:
            parser.read((os.path.expanduser(config_file),))

        settings = dict(calendar_urls=parser.get('calendars', 'urls').split(),
                        m=parser.getint('calendars', 'm'),
                        timeout=parser.getint('calendars', 'timeout'),
                        whitelist=parser.get('whitelist', 'urls').split(),
                        explorer_url=parser.get('bitcoin', 'explorer_url'),
                        bitcoin_node=parser.get('bitcoin', 'node') or None,
                        btc_net=parser.get('bitcoin', 'network'))
        settings.update(kwargs)
        return cls(**settings)

    def remote_calendar(self, calendar_url):
        """Calendar client for calendar_url, sending our User-Agent"""
        return RemoteCalendar(calendar_url, user_agent=self.user_agent)

    def block_explorer(self):
        """Source of Bitcoin block headers

        A local node when bitcoin_node is set, the public explorer otherwise.
        """
        if self.bitcoin_node is not None:
            return RpcBlockExplorer(self.btc_net, service_url=self.bitcoin_node)
        return BlockExplorer(self.explorer_url, user_agent=self.user_agent, timeout=self.timeout)


def submit_async(calendar, calendar_url, msg, q, timeout):
    """Submit msg to calendar in a new thread

    (calendar_url, Timestamp) is put on q on success, (calendar_url,
    exception) on failure.
    """
    def run():
        try:
            result = calendar.submit(msg, timeout=timeout)
        except Exception as exp:
            result = exp
        q.put((calendar_url, result))

    logging.info("Submitting to remote calendar %s" % calendar_url)
    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def create_timestamp(timestamp, calendar_urls, config):
    """Have calendars timestamp timestamp.msg

    Every calendar is asked at once, and whatever replies arrive within
    config.timeout seconds are merged into timestamp. Raises StampError if
    fewer than config.m of them did.
    """
    m, n = config.m, len(calendar_urls)
    if not 0 < m <= n:
        raise ValueError("m must be between 1 and the number of calendars (%d); got %d" % (n, m))

    logging.debug("Doing %d-of-%d request, timeout is %d seconds" % (m, n, config.timeout))

    replies = Queue()
    for calendar_url in calendar_urls:
        submit_async(config.remote_calendar(calendar_url), calendar_url, timestamp.msg, replies, config.timeout)

    deadline = time.time() + config.timeout
    merged = 0
    for _ in calendar_urls:
        try:
            calendar_url, result = replies.get(timeout=max(0, deadline - time.time()))
        except Empty:
            break

        if isinstance(result, Timestamp):
            timestamp.merge(result)
            merged += 1
        else:
            logging.warning("Calendar %s: %s" % (calendar_url, result))

    if merged < m:
        raise StampError("Only %d of the required %d calendars replied within %d seconds" % (merged, m, config.timeout))


def is_timestamp_complete(timestamp):
    """True if timestamp has a Bitcoin attestation, and so can be verified"""
    return any(isinstance(attestation, BitcoinBlockHeaderAttestation)
               for msg, attestation in timestamp.all_attestations())


def _calendars_for_attestation(attestation, config, calendar_urls):
    """Calendars to ask about a pending attestation"""
    if calendar_urls:
        return calendar_urls

    if config.whitelist is None:
        reason = "remote calendars disabled"
    elif attestation.uri in config.whitelist:
        return [attestation.uri]
    else:
        reason = "calendar not in whitelist"

    logging.warning("Ignoring attestation from calendar %s: %s" % (attestation.uri, reason))
    return []


def _upgrade_from_cache(timestamp, cache):
    """Merge in anything the cache has for any message in the tree

    Returns the attestations that were new.
    """
    before = timestamp.get_attestations()
    for sub_stamp in list(timestamp.walk()):
        try:
            sub_stamp.merge(cache[sub_stamp.msg])
        except KeyError:
            pass

    new_attestations = timestamp.get_attestations() - before
    if new_attestations:
        logging.info("Got %d attestation(s) from cache" % len(new_attestations))
    return new_attestations


def _upgrade_from_calendars(timestamp, config, known_attestations, cache, calendar_urls):
    """Ask calendars about every pending attestation in the tree, once

    known_attestations is updated with whatever is new. Returns (got_new,
    found_pending).
    """
    got_new = found_pending = False

    # snapshot: merging adds nodes to the tree
    for sub_stamp in list(timestamp.directly_verified()):
        pending = sorted(a for a in sub_stamp.attestations if isinstance(a, PendingAttestation))
        found_pending = found_pending or bool(pending)

        for attestation in pending:
            for calendar_url in _calendars_for_attestation(attestation, config, calendar_urls):
                logging.debug("Checking calendar %s for %s" % (calendar_url, b2x(sub_stamp.msg)))
                try:
                    fragment = config.remote_calendar(calendar_url).get_timestamp(sub_stamp.msg, timeout=config.timeout)
                except CommitmentNotFoundError as exp:
                    logging.warning("Calendar %s: %s" % (calendar_url, exp.reason))
                    continue
                except (CalendarError, DeserializationError, OSError) as exp:
                    logging.warning("Calendar %s: %s" % (calendar_url, exp))
                    continue

                new_attestations = fragment.get_attestations() - known_attestations
                if not new_attestations:
                    continue

                logging.info("Got %d new attestation(s) from %s" % (len(new_attestations), calendar_url))
                for new_attestation in sorted(new_attestations):
                    logging.debug("    %r" % new_attestation)

                got_new = True
                known_attestations |= new_attestations
                sub_stamp.merge(fragment)
                if cache is not None:
                    cache.merge(fragment)

    return got_new, found_pending


def upgrade_timestamp(timestamp, config, cache=None, calendar_urls=None):
    """Try to add attestations to a timestamp

    The cache is checked for every message in the tree, then the calendar of
    every pending attestation is asked, even if some other part of the tree is
    already complete. calendar_urls, if given, are asked instead of the
    calendars the attestations name.

    With config.wait, keeps trying every config.wait_interval seconds until
    the timestamp is complete.

    Returns True if anything was added.
    """
    changed = False
    if cache is not None:
        changed = bool(_upgrade_from_cache(timestamp, cache))

    known_attestations = timestamp.get_attestations()
    while True:
        got_new, found_pending = _upgrade_from_calendars(timestamp, config, known_attestations, cache, calendar_urls)
        changed = changed or got_new

        if not config.wait or not found_pending or is_timestamp_complete(timestamp):
            return changed

        if not got_new:
            logging.info("Timestamp not complete; waiting %d sec before trying again" % config.wait_interval)
            time.sleep(config.wait_interval)


def _first_bitcoin_attestation(timestamp):
    for msg, attestation in timestamp.all_attestations():
        if isinstance(attestation, BitcoinBlockHeaderAttestation):
            return msg, attestation
        logging.debug("Skipping attestation %r" % attestation)
    return None, None


def verify_timestamp(timestamp, config):
    """Verify a timestamp against the Bitcoin blockchain

    Only the first Bitcoin attestation is checked; pending attestations prove
    nothing. Returns the block time if it holds, raises VerificationError if
    it doesn't, and returns None if there is no Bitcoin attestation or its
    block couldn't be looked up.
    """
    msg, attestation = _first_bitcoin_attestation(timestamp)
    if attestation is None:
        logging.info("No Bitcoin attestation to verify; upgrade the timestamp first")
        return None

    try:
        block_header = config.block_explorer().get_block_header(attestation.height)
    except (ExplorerError, OSError) as exp:
        logging.error("Could not get Bitcoin block %d: %s" % (attestation.height, exp))
        return None

    try:
        attested_time = attestation.verify_against_blockheader(msg, block_header)
    except VerificationError as exp:
        logging.error("Bitcoin verification failed: %s" % exp)
        raise

    logging.info("Success! Bitcoin attests data existed as of %s" %
                 time.strftime('%c %Z', time.localtime(attested_time)))
    return attested_time


def _get_digest(digest_or_fd, file_hash_op):
    """digest_or_fd if it is a digest, the hash of its contents if a file"""
    if not isinstance(digest_or_fd, (bytes, bytearray)):
        return file_hash_op.hash_fd(digest_or_fd)

    if len(digest_or_fd) != file_hash_op.DIGEST_LENGTH:
        raise ValueError("Expected a %d byte %s digest; got %d bytes" %
                         (file_hash_op.DIGEST_LENGTH, file_hash_op.TAG_NAME, len(digest_or_fd)))
    return bytes(digest_or_fd)


def stamp(digest_or_fd, config=None, file_hash_op=OpSHA256()):
    """Timestamp a digest, or the contents of a binary file object

    Returns the serialized proof.
    """
    config = config or Configuration()

    detached_timestamp = DetachedTimestampFile(file_hash_op, Timestamp(_get_digest(digest_or_fd, file_hash_op)))
    tip = nonce_timestamp(detached_timestamp.timestamp)
    create_timestamp(tip, config.calendar_urls, config)

    if config.wait:
        upgrade_timestamp(tip, config)

    return to_bytes(detached_timestamp)


def verify(proof, digest_or_fd, config=None):
    """Verify a serialized proof against a digest or binary file object

    Returns the attested time, or None if the proof can't be verified yet.
    Raises VerificationError if the proof is for other data, or its Bitcoin
    attestation is false.
    """
    config = config or Configuration()
    detached_timestamp = from_bytes(proof, DetachedTimestampFile.deserialize)

    if _get_digest(digest_or_fd, detached_timestamp.file_hash_op) != detached_timestamp.file_digest:
        logging.debug("Expected digest %s" % b2x(detached_timestamp.file_digest))
        raise VerificationError("File does not match original!")

    return verify_timestamp(detached_timestamp.timestamp, config)


def upgrade(proof, config=None, cache=None):
    """Upgrade a serialized proof, returning it serialized again"""
    config = config or Configuration()
    detached_timestamp = from_bytes(proof, DetachedTimestampFile.deserialize)

    if upgrade_timestamp(detached_timestamp.timestamp, config, cache=cache):
        logging.info("Timestamp upgraded")
    logging.info("Timestamp %s" % ("complete" if is_timestamp_complete(detached_timestamp.timestamp) else "not complete"))

    return to_bytes(detached_timestamp)


def info(proof, verbosity=0):
    """Describe a serialized proof"""
    detached_timestamp = from_bytes(proof, DetachedTimestampFile.deserialize)
    return "File %s hash: %s\nTimestamp:\n%s" % (detached_timestamp.file_hash_op.TAG_NAME,
                                                binascii.hexlify(detached_timestamp.file_digest).decode(),
                                                detached_timestamp.timestamp.str_tree(verbosity=verbosity))
