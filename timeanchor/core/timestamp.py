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

"""Commitment trees and the detached proof file

Body grammar, as read and written here:

    body := (FORK edge)* edge
    edge := ATTESTATION attestation
          | op body

Edges are written attestations first, then operations, each group in sorted
order, which makes the encoding of a tree canonical.
"""

import binascii

from timeanchor.core.notary import TimeAttestation, BitcoinBlockHeaderAttestation
from timeanchor.core.op import Op, CryptOp, UnknownOp, OpAppend, OpPrepend, OpSHA256, MsgValueError
from timeanchor.core.serialize import (Writer, DeserializationError, RecursionLimitError,
                                       SerializerValueError, UnsupportedMajorVersion)

FORK_MARKER = 0xff
ATTESTATION_MARKER = 0x00

MAX_DEPTH = 256
"""Most nested bodies a serialized timestamp may have"""


class IncompatibleMergeError(ValueError):
    """Timestamps for different messages can't be merged"""


class OpSet(dict):
    """Outgoing edges of a timestamp: operation -> result timestamp"""
    __slots__ = ['_msg']

    def __init__(self, msg):
        super().__init__()
        self._msg = msg

    def add(self, op):
        """Return the result timestamp for op, creating it if needed"""
        stamp = self.get(op)
        if stamp is None:
            stamp = Timestamp(op(self._msg))
            dict.__setitem__(self, op, stamp)
        return stamp

    def __setitem__(self, op, stamp):
        existing = self.get(op)
        if existing is not None and existing.msg != stamp.msg:
            raise ValueError("%s already leads to a timestamp for a different message" % (op,))
        dict.__setitem__(self, op, stamp)


def _edge_tags(reader):
    """Yield (tag, more) for every edge of a body

    The consumer has to read the rest of each edge before asking for the
    next one.
    """
    while True:
        tag = reader.read_byte()
        more = tag == FORK_MARKER
        if more:
            tag = reader.read_byte()
            if tag == FORK_MARKER:
                raise DeserializationError("Fork marker followed by another fork marker")
        yield tag, more
        if not more:
            return

def _check_depth(depth_left):
    if depth_left <= 0:
        raise RecursionLimitError("Timestamp nested deeper than %d" % MAX_DEPTH)

def _copy_body(reader, writer, depth_left):
    """Copy a body verbatim, for the result of an operation we can't apply"""
    _check_depth(depth_left)
    for tag, more in _edge_tags(reader):
        if more:
            writer.write_byte(FORK_MARKER)
        if tag == ATTESTATION_MARKER:
            writer.write_byte(ATTESTATION_MARKER)
            TimeAttestation.deserialize(reader).serialize(writer)
        else:
            Op.deserialize_from_tag(reader, tag, allow_unknown=True).serialize(writer)
            _copy_body(reader, writer, depth_left - 1)


class Timestamp:
    """A node of a commitment tree

    msg is the message at this node; attestations are the claims made about
    it directly; ops maps each operation applied to msg to the timestamp of its
    result. Operations we can't apply are kept in unknown_ops, mapped to the
    serialized body that follows them.
    """
    __slots__ = ['_msg', 'attestations', 'ops', 'unknown_ops']

    def __init__(self, msg):
        if not isinstance(msg, (bytes, bytearray)):
            raise TypeError("Timestamp message must be bytes; got %r" % msg.__class__)
        self._msg = bytes(msg)
        self.attestations = set()
        self.ops = OpSet(self._msg)
        self.unknown_ops = {}

    @property
    def msg(self):
        return self._msg

    def __eq__(self, other):
        if not isinstance(other, Timestamp):
            return False
        return ((self.msg, self.attestations, self.unknown_ops) == (other.msg, other.attestations, other.unknown_ops)
                and dict(self.ops) == dict(other.ops))

    def __repr__(self):
        return 'Timestamp(<%s>)' % binascii.hexlify(self.msg).decode()

    def child_for(self, op):
        """The timestamp op leads to, or None"""
        return self.ops.get(op)

    def merge(self, other):
        """Merge everything other knows about msg into this timestamp

        Nodes of other are copied, never shared. An opaque edge we already
        have keeps its existing body.
        """
        if not isinstance(other, Timestamp):
            raise TypeError("Can only merge a Timestamp; got %r" % other.__class__)
        if other.msg != self.msg:
            raise IncompatibleMergeError("Can't merge a timestamp for %s into one for %s" %
                                         (binascii.hexlify(other.msg).decode(), binascii.hexlify(self.msg).decode()))
        if other is self:
            return

        self.attestations |= other.attestations
        for op, stamp in other.ops.items():
            self.ops.add(op).merge(stamp)
        for op, body in other.unknown_ops.items():
            self.unknown_ops.setdefault(op, body)

    def _edges(self):
        """(op, result) pairs in serialization order

        result is a Timestamp, or the raw body for an unknown operation.
        """
        return sorted(list(self.ops.items()) + list(self.unknown_ops.items()),
                      key=lambda edge: edge[0].sort_key())

    def serialize(self, writer):
        attestations = sorted(self.attestations)
        edges = self._edges()
        if not attestations and not edges:
            raise ValueError("Can't serialize a timestamp with no attestations or operations")

        # (marker or op, what follows) for every edge
        items = [(ATTESTATION_MARKER, attestation) for attestation in attestations] + edges
        last = len(items) - 1
        for i, (head, tail) in enumerate(items):
            if i != last:
                writer.write_byte(FORK_MARKER)
            if isinstance(head, Op):
                head.serialize(writer)
            else:
                writer.write_byte(head)

            if isinstance(tail, bytes):
                writer.write_bytes(tail)
            else:
                tail.serialize(writer)

    @classmethod
    def deserialize(cls, reader, initial_msg, _depth_left=MAX_DEPTH):
        """Read a body whose root message is initial_msg

        The body doesn't contain any messages, so they are all recomputed from
        initial_msg as the operations are read.
        """
        _check_depth(_depth_left)
        stamp = cls(initial_msg)

        for tag, more in _edge_tags(reader):
            if tag == ATTESTATION_MARKER:
                stamp.attestations.add(TimeAttestation.deserialize(reader))
                continue

            op = Op.deserialize_from_tag(reader, tag, allow_unknown=True)
            if isinstance(op, UnknownOp):
                writer = Writer()
                _copy_body(reader, writer, _depth_left - 1)
                body = writer.getbytes()
                if stamp.unknown_ops.setdefault(op, body) != body:
                    raise DeserializationError("%s appears twice with different timestamps" % (op,))
                continue

            try:
                result = op(stamp.msg)
            except MsgValueError as exp:
                raise DeserializationError("Invalid timestamp; %s can't be applied: %s" % (op, exp))

            child = cls.deserialize(reader, result, _depth_left - 1)
            if op in stamp.ops:
                stamp.ops[op].merge(child)
            else:
                stamp.ops[op] = child

        return stamp

    def walk(self):
        """Every timestamp reachable from this one, each exactly once

        Depth first, parents before children, children in serialization order.
        """
        seen = set()
        pending = [self]
        while pending:
            stamp = pending.pop()
            if id(stamp) in seen:
                continue
            seen.add(id(stamp))
            yield stamp
            children = [child for op, child in stamp._edges() if isinstance(child, Timestamp)]
            pending.extend(reversed(children))

    def directly_verified(self):
        """Timestamps in the tree that have attestations of their own"""
        return (stamp for stamp in self.walk() if stamp.attestations)

    def all_attestations(self):
        """(msg, attestation) for every attestation in the tree, in serialization order"""
        for stamp in self.directly_verified():
            for attestation in sorted(stamp.attestations):
                yield stamp.msg, attestation

    def get_attestations(self):
        return {attestation for msg, attestation in self.all_attestations()}

    def str_tree(self, indent=0, verbosity=0):
        """Human readable rendering of the tree"""
        pad = ' ' * indent
        lines = []
        for attestation in sorted(self.attestations):
            lines.append('%sverify %s\n' % (pad, attestation))
            if verbosity > 0 and isinstance(attestation, BitcoinBlockHeaderAttestation):
                lines.append('%s# Bitcoin block merkle root %s\n' % (pad, binascii.hexlify(self.msg[::-1]).decode()))

        edges = self._edges()
        # a linear chain stays at the same indent; forks get an arrow each
        forked = len(edges) > 1
        for op, result in edges:
            line = str(op)
            if not isinstance(result, Timestamp):
                line += ' (not understood; result unknown)'
            elif verbosity > 0:
                line += ' == %s' % binascii.hexlify(result.msg).decode()
            lines.append('%s%s%s\n' % (pad, ' -> ' if forked else '', line))

            if isinstance(result, Timestamp):
                lines.append(result.str_tree(indent + 4 if forked else indent, verbosity))

        return ''.join(lines)


def cat_then_unary_op(unary_op_cls, left, right):
    """Commit to left||right with unary_op_cls

    left and right may be timestamps or bytes. Both gain an edge to the same
    concatenation node; the timestamp of the unary op's result is returned.
    """
    left = left if isinstance(left, Timestamp) else Timestamp(left)
    right = right if isinstance(right, Timestamp) else Timestamp(right)

    joined = right.ops.add(OpPrepend(left.msg))
    left.ops[OpAppend(right.msg)] = joined
    return joined.ops.add(unary_op_cls())

def cat_sha256(left, right):
    return cat_then_unary_op(OpSHA256, left, right)

def cat_sha256d(left, right):
    return cat_sha256(left, right).ops.add(OpSHA256())

def make_merkle_tree(timestamps, binop=cat_sha256):
    """Commit to every timestamp with a single tip, in place

    Neighbours are joined pairwise with binop, level by level, an odd one out
    moving up to the next level unchanged. This layout is part of existing
    proofs and must not change.

    Returns the tip's timestamp.
    """
    level = list(timestamps)
    if not level:
        raise ValueError("Need at least one timestamp")

    while len(level) > 1:
        next_level = [binop(level[i], level[i+1]) for i in range(0, len(level) - 1, 2)]
        if len(level) % 2:
            next_level.append(level[-1])
        level = next_level

    return level[0]


class DetachedTimestampFile:
    """A proof for a file, kept separately from the file itself

    Holds the hash operation used on the file and the timestamp for the
    resulting digest.
    """

    HEADER_MAGIC = b'\x00OpenTimestamps\x00\x00Proof\x00\xbf\x89\xe2\xe8\x84\xe8\x92\x94'
    MAJOR_VERSION = 1

    def __init__(self, file_hash_op, timestamp):
        if not isinstance(file_hash_op, CryptOp):
            raise TypeError("file_hash_op must be a hash operation; got %r" % file_hash_op.__class__)
        self.file_hash_op = file_hash_op
        self.timestamp = timestamp

    @property
    def file_digest(self):
        return self.timestamp.msg

    @classmethod
    def from_fd(cls, file_hash_op, fd):
        return cls(file_hash_op, Timestamp(file_hash_op.hash_fd(fd)))

    def __eq__(self, other):
        return (isinstance(other, DetachedTimestampFile) and
                (self.file_hash_op, self.timestamp) == (other.file_hash_op, other.timestamp))

    def __repr__(self):
        return 'DetachedTimestampFile(<%s:%s>)' % (self.file_hash_op, binascii.hexlify(self.file_digest).decode())

    def serialize(self, writer):
        if len(self.file_digest) != self.file_hash_op.DIGEST_LENGTH:
            raise SerializerValueError("%s digests are %d bytes; got %d" %
                                       (self.file_hash_op, self.file_hash_op.DIGEST_LENGTH, len(self.file_digest)))
        writer.write_bytes(self.HEADER_MAGIC)
        writer.write_varuint(self.MAJOR_VERSION)
        self.file_hash_op.serialize(writer)
        writer.write_bytes(self.file_digest)
        self.timestamp.serialize(writer)

    @classmethod
    def deserialize(cls, reader):
        reader.assert_magic(cls.HEADER_MAGIC)
        version = reader.read_varuint()
        if version != cls.MAJOR_VERSION:
            raise UnsupportedMajorVersion("Can't read version %d proofs" % version)

        file_hash_op = CryptOp.deserialize(reader)
        digest = reader.read_bytes(file_hash_op.DIGEST_LENGTH)
        timestamp = Timestamp.deserialize(reader, digest)
        reader.assert_eof()
        return cls(file_hash_op, timestamp)
