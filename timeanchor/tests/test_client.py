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

import io
import os
import tempfile
import unittest

from bitcoin.core import CBlockHeader

from timeanchor.calendar import CommitmentNotFoundError, CalendarError, UrlWhitelist
from timeanchor.client import *
from timeanchor.core.notary import PendingAttestation, BitcoinBlockHeaderAttestation, VerificationError
from timeanchor.core.op import OpAppend, OpSHA256
from timeanchor.core.serialize import to_bytes, from_bytes
from timeanchor.core.timestamp import Timestamp, DetachedTimestampFile
from timeanchor.explorer import BlockExplorer, ExplorerError

CALENDAR_A = 'https://a.calendar.example.com'
CALENDAR_B = 'https://b.calendar.example.com'

class StubCalendar:
    def __init__(self, url, fail=False, upgrades=None):
        self.url = url
        self.fail = fail
        self.upgrades = upgrades or {}
        self.submitted = []

    def submit(self, digest, timeout=None):
        if self.fail:
            raise CalendarError("Unknown response from calendar: 500")
        self.submitted.append(digest)
        stamp = Timestamp(digest)
        stamp.attestations.add(PendingAttestation(self.url))
        return stamp

    def get_timestamp(self, commitment, timeout=None):
        if self.fail:
            raise OSError("Connection refused")
        try:
            return self.upgrades[commitment]
        except KeyError:
            raise CommitmentNotFoundError("Commitment not found")


class StubExplorer:
    def __init__(self, block_headers):
        self.block_headers = block_headers

    def get_block_header(self, height):
        try:
            return self.block_headers[height]
        except KeyError:
            raise ExplorerError("Bitcoin block height %d not found" % height)


class StubConfiguration(Configuration):
    """Configuration whose calendars and explorer are stubs"""

    def __init__(self, calendars=(), explorer=None, **kwargs):
        kwargs.setdefault('whitelist', ['https://*.calendar.example.com'])
        super().__init__(calendar_urls=[calendar.url for calendar in calendars], **kwargs)
        self.calendars = {calendar.url: calendar for calendar in calendars}
        self.explorer = explorer
        self.calendars_asked = []

    def remote_calendar(self, calendar_url):
        self.calendars_asked.append(calendar_url)
        return self.calendars[calendar_url]

    def block_explorer(self):
        if self.explorer is None:
            raise ExplorerError("No block explorer")
        return self.explorer


class StubCache(dict):
    def merge(self, timestamp):
        self.setdefault(timestamp.msg, Timestamp(timestamp.msg)).merge(timestamp)


def deserialize_file_stamp(proof):
    return from_bytes(proof, DetachedTimestampFile.deserialize)


def make_bitcoin_proof(digest, height=358391):
    """Proof for digest with a Bitcoin attestation on its tip

    Returns the proof and the message the attestation commits to.
    """
    file_stamp = DetachedTimestampFile(OpSHA256(), Timestamp(digest))
    tip = file_stamp.timestamp.ops.add(OpAppend(b'\x01'*16)).ops.add(OpSHA256())
    tip.attestations.add(BitcoinBlockHeaderAttestation(height))
    return to_bytes(file_stamp), tip.msg


class Test_Configuration(unittest.TestCase):
    def test_defaults(self):
        config = Configuration()
        self.assertEqual(config.calendar_urls, DEFAULT_CALENDAR_URLS)
        self.assertIsInstance(config.whitelist, UrlWhitelist)
        self.assertIn('https://alice.btc.calendar.opentimestamps.org', config.whitelist)
        self.assertEqual((config.m, config.timeout, config.wait), (2, 5, False))
        self.assertTrue(config.user_agent.startswith('timeanchor/'))

    def test_from_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'timeanchor.conf')
            with open(path, 'w') as fd:
                fd.write('[calendars]\n'
                         'urls = https://a.example.com\n'
                         '       https://b.example.com\n'
                         'm = 1\n'
                         '\n'
                         '[whitelist]\n'
                         'urls = *.example.com\n'
                         '\n'
                         '[bitcoin]\n'
                         'explorer_url = https://explorer.example.com/api\n'
                         'network = testnet\n')

            config = Configuration.from_file(path, timeout=10)

        self.assertEqual(config.calendar_urls, ['https://a.example.com', 'https://b.example.com'])
        self.assertEqual(config.m, 1)
        self.assertEqual(config.timeout, 10)
        self.assertIn('https://a.example.com', config.whitelist)
        self.assertNotIn('https://a.calendar.opentimestamps.org', config.whitelist)
        self.assertEqual(config.explorer_url, 'https://explorer.example.com/api')
        self.assertEqual(config.btc_net, 'testnet')
        self.assertIsNone(config.bitcoin_node)

    def test_from_missing_file(self):
        config = Configuration.from_file('/nonexistent/timeanchor.conf')
        self.assertEqual(config.calendar_urls, DEFAULT_CALENDAR_URLS)
        self.assertEqual(config.explorer_url, DEFAULT_EXPLORER_URL)

    def test_no_remote_calendars(self):
        self.assertIsNone(Configuration(whitelist=None).whitelist)

    def test_unknown_network(self):
        """Only networks python-bitcoinlib knows about are accepted"""
        for btc_net in BTC_NETWORKS:
            self.assertEqual(Configuration(btc_net=btc_net).btc_net, btc_net)

        with self.assertRaises(ValueError):
            Configuration(btc_net='bogus')

        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'timeanchor.conf')
            with open(path, 'w') as fd:
                fd.write('[bitcoin]\n'
                         'network = bogus\n')
            with self.assertRaises(ValueError):
                Configuration.from_file(path)

            # overridden on the command line
            self.assertEqual(Configuration.from_file(path, btc_net='regtest').btc_net, 'regtest')

    def test_collaborators(self):
        config = Configuration(explorer_url='https://explorer.example.com/api', user_agent='test')

        calendar = config.remote_calendar(CALENDAR_A)
        self.assertEqual(calendar.url, CALENDAR_A)
        self.assertEqual(calendar.request_headers['User-Agent'], 'test')

        explorer = config.block_explorer()
        self.assertIsInstance(explorer, BlockExplorer)
        self.assertEqual(explorer.url, 'https://explorer.example.com/api')


class Test_stamp(unittest.TestCase):
    def test_stamp_digest(self):
        """Stamping a digest"""
        calendars = [StubCalendar(CALENDAR_A), StubCalendar(CALENDAR_B)]
        config = StubConfiguration(calendars)

        digest = bytes(range(32))
        file_stamp = deserialize_file_stamp(stamp(digest, config))

        self.assertEqual(file_stamp.file_digest, digest)
        self.assertEqual(file_stamp.file_hash_op, OpSHA256())

        # Nonce, then hash
        (nonce_op, nonce_stamp), = file_stamp.timestamp.ops.items()
        self.assertIsInstance(nonce_op, OpAppend)
        self.assertEqual(len(nonce_op[0]), 16)

        (hash_op, tip), = nonce_stamp.ops.items()
        self.assertEqual(hash_op, OpSHA256())

        self.assertEqual(tip.attestations, {PendingAttestation(CALENDAR_A), PendingAttestation(CALENDAR_B)})
        for calendar in calendars:
            self.assertEqual(calendar.submitted, [tip.msg])

    def test_stamp_fd(self):
        config = StubConfiguration([StubCalendar(CALENDAR_A)], m=1)

        file_stamp = deserialize_file_stamp(stamp(io.BytesIO(b''), config))
        self.assertEqual(file_stamp.file_digest, bytes.fromhex('e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'))

    def test_nonces_differ(self):
        config = StubConfiguration([StubCalendar(CALENDAR_A)], m=1)
        self.assertNotEqual(stamp(b'\x00'*32, config), stamp(b'\x00'*32, config))

    def test_bad_digest_length(self):
        config = StubConfiguration([StubCalendar(CALENDAR_A)], m=1)
        with self.assertRaises(ValueError):
            stamp(b'\x00'*20, config)

    def test_not_enough_calendars(self):
        """Stamping fails if fewer than m calendars reply"""
        config = StubConfiguration([StubCalendar(CALENDAR_A), StubCalendar(CALENDAR_B, fail=True)])
        with self.assertRaises(StampError):
            stamp(b'\x00'*32, config)

        config = StubConfiguration([StubCalendar(CALENDAR_A), StubCalendar(CALENDAR_B, fail=True)], m=1)
        file_stamp = deserialize_file_stamp(stamp(b'\x00'*32, config))
        self.assertEqual(file_stamp.timestamp.get_attestations(), {PendingAttestation(CALENDAR_A)})

    def test_invalid_m(self):
        config = StubConfiguration([StubCalendar(CALENDAR_A)], m=2)
        with self.assertRaises(ValueError):
            create_timestamp(Timestamp(b'\x00'*32), config.calendar_urls, config)

        config = StubConfiguration([StubCalendar(CALENDAR_A)], m=0)
        with self.assertRaises(ValueError):
            create_timestamp(Timestamp(b'\x00'*32), config.calendar_urls, config)


class Test_verify(unittest.TestCase):
    def test_success(self):
        """A valid Bitcoin attestation gives the block time"""
        digest = b'\x00'*32
        proof, merkle_root = make_bitcoin_proof(digest)
        explorer = StubExplorer({358391: CBlockHeader(hashMerkleRoot=merkle_root, nTime=1432827678)})

        self.assertEqual(verify(proof, digest, StubConfiguration(explorer=explorer)), 1432827678)

    def test_mismatch(self):
        """A Bitcoin attestation for a different merkle root is invalid, not inconclusive"""
        digest = b'\x00'*32
        proof, merkle_root = make_bitcoin_proof(digest)
        flipped_root = bytes([merkle_root[0] ^ 1]) + merkle_root[1:]
        explorer = StubExplorer({358391: CBlockHeader(hashMerkleRoot=flipped_root, nTime=1432827678)})

        with self.assertRaises(VerificationError):
            verify(proof, digest, StubConfiguration(explorer=explorer))

    def test_wrong_digest(self):
        proof, merkle_root = make_bitcoin_proof(b'\x00'*32)
        with self.assertRaises(VerificationError):
            verify(proof, b'\x01'*32, StubConfiguration())

        with self.assertRaises(VerificationError):
            verify(proof, io.BytesIO(b'not the original'), StubConfiguration())

    def test_inconclusive(self):
        """Nothing to check, or nowhere to check it, isn't a failure"""
        digest = b'\x00'*32
        file_stamp = DetachedTimestampFile(OpSHA256(), Timestamp(digest))
        file_stamp.timestamp.attestations.add(PendingAttestation(CALENDAR_A))
        self.assertIsNone(verify(to_bytes(file_stamp), digest, StubConfiguration()))

        proof, merkle_root = make_bitcoin_proof(digest)
        self.assertIsNone(verify(proof, digest, StubConfiguration()))
        self.assertIsNone(verify(proof, digest, StubConfiguration(explorer=StubExplorer({}))))

    def test_first_bitcoin_attestation_only(self):
        stamp = Timestamp(b'\x00'*32)
        first = stamp.ops.add(OpSHA256())
        first.attestations.add(BitcoinBlockHeaderAttestation(2))
        second = stamp.ops.add(OpAppend(b'\x01')).ops.add(OpSHA256())
        second.attestations.add(BitcoinBlockHeaderAttestation(1))

        explorer = StubExplorer({1: CBlockHeader(hashMerkleRoot=second.msg, nTime=1),
                                 2: CBlockHeader(hashMerkleRoot=first.msg, nTime=2)})
        self.assertEqual(verify_timestamp(stamp, StubConfiguration(explorer=explorer)), 2)


class Test_upgrade(unittest.TestCase):
    def make_pending(self, calendar_url=CALENDAR_A):
        stamp = Timestamp(b'\x00'*32)
        tip = stamp.ops.add(OpSHA256())
        tip.attestations.add(PendingAttestation(calendar_url))
        return stamp, tip

    def make_upgrade(self, commitment):
        upgraded = Timestamp(commitment)
        upgraded.ops.add(OpSHA256()).attestations.add(BitcoinBlockHeaderAttestation(358391))
        return upgraded

    def test_upgrade(self):
        """A pending attestation is upgraded from its calendar"""
        stamp, tip = self.make_pending()
        calendar = StubCalendar(CALENDAR_A, upgrades={tip.msg: self.make_upgrade(tip.msg)})
        config = StubConfiguration([calendar])
        cache = StubCache()

        self.assertFalse(is_timestamp_complete(stamp))
        self.assertTrue(upgrade_timestamp(stamp, config, cache=cache))
        self.assertTrue(is_timestamp_complete(stamp))

        self.assertEqual(stamp.get_attestations(),
                         {PendingAttestation(CALENDAR_A), BitcoinBlockHeaderAttestation(358391)})
        self.assertEqual(cache[tip.msg], self.make_upgrade(tip.msg))

        # Nothing more to get
        self.assertFalse(upgrade_timestamp(stamp, config))

    def test_upgrade_partly_complete(self):
        """Pending attestations are still upgraded when another branch already has a Bitcoin attestation"""
        stamp = Timestamp(b'\x00'*32)
        stamp.ops.add(OpAppend(b'\x01')).attestations.add(BitcoinBlockHeaderAttestation(1))
        pending_tip = stamp.ops.add(OpAppend(b'\x02'))
        pending_tip.attestations.add(PendingAttestation(CALENDAR_A))

        fragment = Timestamp(pending_tip.msg)
        fragment.attestations.add(BitcoinBlockHeaderAttestation(2))
        config = StubConfiguration([StubCalendar(CALENDAR_A, upgrades={pending_tip.msg: fragment})])

        self.assertTrue(is_timestamp_complete(stamp))
        self.assertTrue(upgrade_timestamp(stamp, config))
        self.assertEqual(config.calendars_asked, [CALENDAR_A])
        self.assertIn(BitcoinBlockHeaderAttestation(2), stamp.get_attestations())
        self.assertIn(BitcoinBlockHeaderAttestation(2), pending_tip.attestations)

    def test_upgrade_wait(self):
        """Waiting stops as soon as the timestamp is complete"""
        stamp, tip = self.make_pending()
        calendar = StubCalendar(CALENDAR_A, upgrades={tip.msg: self.make_upgrade(tip.msg)})
        config = StubConfiguration([calendar], wait=True, wait_interval=0)

        self.assertTrue(upgrade_timestamp(stamp, config))
        self.assertEqual(config.calendars_asked, [CALENDAR_A])
        self.assertTrue(is_timestamp_complete(stamp))

    def test_upgrade_from_cache(self):
        stamp, tip = self.make_pending()
        cache = StubCache()
        cache.merge(self.make_upgrade(tip.msg))
        config = StubConfiguration([StubCalendar(CALENDAR_A)])

        self.assertTrue(upgrade_timestamp(stamp, config, cache=cache))
        self.assertTrue(is_timestamp_complete(stamp))
        self.assertEqual(config.calendars_asked, [])

    def test_calendar_not_whitelisted(self):
        stamp, tip = self.make_pending('https://calendar.evil.example.org')
        config = StubConfiguration([StubCalendar('https://calendar.evil.example.org')])

        self.assertFalse(upgrade_timestamp(stamp, config))
        self.assertEqual(config.calendars_asked, [])

        # Unless explicitly asked for
        self.assertFalse(upgrade_timestamp(stamp, config, calendar_urls=['https://calendar.evil.example.org']))
        self.assertEqual(config.calendars_asked, ['https://calendar.evil.example.org'])

    def test_remote_calendars_disabled(self):
        stamp, tip = self.make_pending()
        config = StubConfiguration([StubCalendar(CALENDAR_A)], whitelist=None)

        self.assertFalse(upgrade_timestamp(stamp, config))
        self.assertEqual(config.calendars_asked, [])

    def test_calendar_failure(self):
        """Unreachable calendars mean no change"""
        stamp, tip = self.make_pending()
        config = StubConfiguration([StubCalendar(CALENDAR_A, fail=True)])

        self.assertFalse(upgrade_timestamp(stamp, config))
        self.assertFalse(is_timestamp_complete(stamp))

    def test_upgrade_proof(self):
        digest = b'\x00'*32
        file_stamp = DetachedTimestampFile(OpSHA256(), Timestamp(digest))
        file_stamp.timestamp.attestations.add(PendingAttestation(CALENDAR_A))
        proof = to_bytes(file_stamp)

        calendar = StubCalendar(CALENDAR_A, upgrades={digest: self.make_upgrade(digest)})
        upgraded = deserialize_file_stamp(upgrade(proof, StubConfiguration([calendar])))

        self.assertTrue(is_timestamp_complete(upgraded.timestamp))
        self.assertEqual(upgraded.file_digest, digest)

        # Unchanged proofs come back as they were
        self.assertEqual(upgrade(proof, StubConfiguration([StubCalendar(CALENDAR_A)])), proof)


class Test_info(unittest.TestCase):
    def test_info(self):
        digest = bytes.fromhex('e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855')
        file_stamp = DetachedTimestampFile(OpSHA256(), Timestamp(digest))
        file_stamp.timestamp.attestations.add(PendingAttestation(CALENDAR_A))

        self.assertEqual(info(to_bytes(file_stamp)),
                         'File sha256 hash: e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855\n'
                         'Timestamp:\n'
                         'verify PendingAttestation(https://a.calendar.example.com)\n')
