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

"""Attestations: the leaves of a commitment tree

An attestation claims that the message of the node it hangs off existed by
some point in time. On the wire it is an 8-byte tag followed by a varbytes
payload, so attestations we don't understand can still be carried along.
"""

import binascii

from timeanchor.core.keyed import Keyed
from timeanchor.core.serialize import DeserializationError, Writer, Reader

TAG_SIZE = 8
MAX_PAYLOAD_SIZE = 8192

ATTESTATIONS_BY_TAG = {}
"""Every known attestation class, by tag"""


class VerificationError(Exception):
    """The attestation does not hold for the message it attests"""


class TimeAttestation(Keyed):
    """Base class of all attestations

    Known kinds set TAG and implement _value(), _write_payload() and
    _read_payload(). Attestations order by tag, then by value.
    """
    TAG = None

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if isinstance(cls.__dict__.get('TAG'), bytes):
            assert len(cls.TAG) == TAG_SIZE and cls.TAG not in ATTESTATIONS_BY_TAG
            ATTESTATIONS_BY_TAG[cls.TAG] = cls

    def _value(self):
        raise NotImplementedError

    def sort_key(self):
        return (self.TAG, self._value())

    def _write_payload(self, writer):
        raise NotImplementedError

    def serialize(self, writer):
        payload = Writer()
        self._write_payload(payload)
        writer.write_bytes(self.TAG)
        writer.write_varbytes(payload.getbytes())

    @classmethod
    def deserialize(cls, reader):
        tag = reader.read_bytes(TAG_SIZE)
        payload = reader.read_varbytes(MAX_PAYLOAD_SIZE)

        known_cls = ATTESTATIONS_BY_TAG.get(tag)
        if known_cls is None:
            return UnknownAttestation(tag, payload)

        # a known payload has exactly one encoding
        payload_reader = Reader(payload)
        attestation = known_cls._read_payload(payload_reader)
        payload_reader.assert_eof()
        return attestation


class UnknownAttestation(TimeAttestation):
    """Attestation of a kind we don't support, kept as raw tag and payload"""

    def __init__(self, tag, payload):
        if not isinstance(tag, bytes) or not isinstance(payload, bytes):
            raise TypeError('tag and payload must be bytes')
        if len(tag) != TAG_SIZE:
            raise ValueError('tag must be %d bytes; got %d' % (TAG_SIZE, len(tag)))
        if len(payload) > MAX_PAYLOAD_SIZE:
            raise ValueError('payload too long; %d > %d' % (len(payload), MAX_PAYLOAD_SIZE))
        self.tag = tag
        self.payload = payload

    @property
    def TAG(self):
        return self.tag

    def _value(self):
        return self.payload

    def _write_payload(self, writer):
        # already encoded, so no extra length prefix
        writer.write_bytes(self.payload)

    def __repr__(self):
        return 'UnknownAttestation(%r, %r)' % (self.tag, self.payload)

    def __str__(self):
        return 'UnknownAttestation(tag %s)' % binascii.hexlify(self.tag).decode()


class PendingAttestation(TimeAttestation):
    """Submitted to a calendar, which may later have a complete proof

    The attestation carries only the calendar's URI; it proves nothing by
    itself.
    """
    TAG = bytes.fromhex('83dfe30d2ef90c8e')

    MAX_URI_LENGTH = 1000

    # no queries, fragments, logins, percent-escapes or IPv6 literals
    ALLOWED_URI_CHARS = frozenset(b'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._/:')

    @classmethod
    def check_uri(cls, uri):
        """Raise ValueError unless uri (bytes) is an acceptable calendar URI"""
        if len(uri) > cls.MAX_URI_LENGTH:
            raise ValueError('URI longer than %d bytes' % cls.MAX_URI_LENGTH)
        bad = set(uri) - cls.ALLOWED_URI_CHARS
        if bad:
            raise ValueError('URI contains invalid characters %r' % bytes(sorted(bad)))

    def __init__(self, uri):
        if not isinstance(uri, str):
            raise TypeError('URI must be a str')
        self.check_uri(uri.encode())
        self.uri = uri

    def _value(self):
        return self.uri

    def _write_payload(self, writer):
        writer.write_varbytes(self.uri.encode())

    @classmethod
    def _read_payload(cls, reader):
        raw_uri = reader.read_varbytes(cls.MAX_URI_LENGTH)
        try:
            cls.check_uri(raw_uri)
        except ValueError as exp:
            raise DeserializationError('Invalid pending attestation URI: %s' % exp)
        return cls(raw_uri.decode())

    def __repr__(self):
        return 'PendingAttestation(%r)' % self.uri

    def __str__(self):
        return 'PendingAttestation(%s)' % self.uri


class BitcoinBlockHeaderAttestation(TimeAttestation):
    """The message is the merkle root of the Bitcoin block at height

    Only the height is stored; the header itself has to come from a block
    explorer or node. The attested message is in the header's internal byte
    order, the reverse of what explorers display.
    """
    TAG = bytes.fromhex('0588960d73d71901')

    def __init__(self, height):
        if not isinstance(height, int) or isinstance(height, bool) or height < 0:
            raise ValueError('height must be a non-negative int; got %r' % (height,))
        self.height = height

    def _value(self):
        return self.height

    def _write_payload(self, writer):
        writer.write_varuint(self.height)

    @classmethod
    def _read_payload(cls, reader):
        return cls(reader.read_varuint())

    def verify_against_blockheader(self, digest, block_header):
        """Check digest against a bitcoin.core.CBlockHeader

        Returns the block's time; raises VerificationError on mismatch.
        """
        if len(digest) != 32:
            raise VerificationError('Bitcoin attestations need a 32 byte digest; got %d bytes' % len(digest))
        if digest != block_header.hashMerkleRoot:
            raise VerificationError('Digest does not match the merkle root of block %d' % self.height)
        return block_header.nTime

    def __repr__(self):
        return 'BitcoinBlockHeaderAttestation(%d)' % self.height

    __str__ = __repr__
