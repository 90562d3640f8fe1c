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

"""Commitment operations

Each operation is an edge in a commitment tree: a pure function from one
message to the next. Every kind of operation is a tuple subclass identified by
a one-byte tag, registered in a single table when the class is defined.
Operations compare by (tag, arguments), which is also their canonical
serialization order.
"""

import binascii
import hashlib

from bitcoin.core.contrib.ripemd160 import ripemd160
from Cryptodome.Hash import keccak

from timeanchor.core.keyed import Keyed
from timeanchor.core.serialize import DeserializationError

MAX_MSG_LENGTH = 4096
"""Longest message any operation accepts"""

MAX_RESULT_LENGTH = 4096
"""Longest result any operation may produce

Also the longest argument a binary operation can carry. Together with
MAX_MSG_LENGTH this bounds the memory needed to verify one path of a proof.
"""

RESERVED_TAGS = (0x00, 0xff)
"""Tags used as markers inside a serialized timestamp"""

OPS_BY_TAG = {}
"""Every known operation class, by tag"""


class MsgValueError(ValueError):
    """The operation can't be applied to this message"""

class OpArgValueError(ValueError):
    """The operation's argument is invalid"""


class Op(Keyed, tuple):
    """A commitment operation

    Subclasses set TAG and TAG_NAME, and implement _apply(msg).
    """
    __slots__ = ()

    TAG = None
    TAG_NAME = None
    MAX_MSG_LENGTH = MAX_MSG_LENGTH

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if not isinstance(cls.__dict__.get('TAG'), int):
            return
        if cls.TAG in RESERVED_TAGS or cls.TAG in OPS_BY_TAG:
            raise ValueError('op tag 0x%02x already in use' % cls.TAG)
        OPS_BY_TAG[cls.TAG] = cls

    def sort_key(self):
        return (self.TAG, tuple(self))

    def _apply(self, msg):
        raise NotImplementedError

    def __call__(self, msg):
        """Apply the operation to msg, returning the result

        Raises MsgValueError when msg, or the result, is too long.
        """
        if not isinstance(msg, bytes):
            raise TypeError('message must be bytes; got %r' % msg.__class__)
        if len(msg) > self.MAX_MSG_LENGTH:
            raise MsgValueError('%s: message too long; %d > %d' % (self.TAG_NAME, len(msg), self.MAX_MSG_LENGTH))

        result = self._apply(msg)

        # an empty result would let a message commit to itself
        assert result
        if len(result) > MAX_RESULT_LENGTH:
            raise MsgValueError('%s: result too long; %d > %d' % (self.TAG_NAME, len(result), MAX_RESULT_LENGTH))
        return result

    def __repr__(self):
        return '%s()' % self.__class__.__name__

    def __str__(self):
        return self.TAG_NAME

    def serialize(self, writer):
        writer.write_byte(self.TAG)

    @classmethod
    def _read_args(cls, reader):
        return ()

    @classmethod
    def deserialize_from_tag(cls, reader, tag, allow_unknown=False):
        """Read the rest of an operation whose tag has already been read

        Only operations that are a subclass of cls are accepted. With
        allow_unknown, unregistered tags come back as UnknownOp instead of
        failing.
        """
        op_cls = OPS_BY_TAG.get(tag)
        if op_cls is None and allow_unknown and tag not in RESERVED_TAGS:
            return UnknownOp.deserialize_from_tag(reader, tag)
        elif op_cls is None or not issubclass(op_cls, cls):
            raise DeserializationError('0x%02x is not a known %s tag' % (tag, cls.__name__))
        return op_cls(*op_cls._read_args(reader))

    @classmethod
    def deserialize(cls, reader):
        return cls.deserialize_from_tag(reader, reader.read_byte())


class UnaryOp(Op):
    """Operation with no argument"""
    __slots__ = ()

    def __new__(cls):
        return tuple.__new__(cls)


class BinaryOp(Op):
    """Operation with a single, non-empty, bytes argument"""
    __slots__ = ()

    def __new__(cls, arg):
        if not isinstance(arg, bytes):
            raise TypeError('%s argument must be bytes' % cls.__name__)
        if not arg or len(arg) > MAX_RESULT_LENGTH:
            raise OpArgValueError('%s argument must be 1 to %d bytes; got %d' % (cls.__name__, MAX_RESULT_LENGTH, len(arg)))
        return tuple.__new__(cls, (arg,))

    @property
    def arg(self):
        return self[0]

    def __repr__(self):
        return '%s(%r)' % (self.__class__.__name__, self.arg)

    def __str__(self):
        return '%s %s' % (self.TAG_NAME, binascii.hexlify(self.arg).decode())

    def serialize(self, writer):
        super().serialize(writer)
        writer.write_varbytes(self.arg)

    @classmethod
    def _read_args(cls, reader):
        return (reader.read_varbytes(MAX_RESULT_LENGTH, min_len=1),)


class OpAppend(BinaryOp):
    """Append the argument to the message"""
    __slots__ = ()
    TAG = 0xf0
    TAG_NAME = 'append'

    def _apply(self, msg):
        return msg + self.arg

class OpPrepend(BinaryOp):
    """Prepend the argument to the message"""
    __slots__ = ()
    TAG = 0xf1
    TAG_NAME = 'prepend'

    def _apply(self, msg):
        return self.arg + msg


class OpReverse(UnaryOp):
    __slots__ = ()
    TAG = 0xf2
    TAG_NAME = 'reverse'

    def _apply(self, msg):
        if not msg:
            raise MsgValueError("can't reverse an empty message")
        return msg[::-1]

class OpHexlify(UnaryOp):
    """Lower-case hex encoding of the message"""
    __slots__ = ()
    TAG = 0xf3
    TAG_NAME = 'hexlify'

    # the result is twice as long as the message
    MAX_MSG_LENGTH = MAX_RESULT_LENGTH // 2

    def _apply(self, msg):
        if not msg:
            raise MsgValueError("can't hexlify an empty message")
        return binascii.hexlify(msg)


class CryptOp(UnaryOp):
    """Hash functions

    The result has a fixed length whatever the message length, and unlike
    other operations they can be applied to a whole stream.
    """
    __slots__ = ()
    DIGEST_LENGTH = None

    @staticmethod
    def new_hasher():
        raise NotImplementedError

    def _apply(self, msg):
        hasher = self.new_hasher()
        hasher.update(msg)
        return hasher.digest()

    def hash_fd(self, fd, chunk_size=2**20):
        """Hash everything left in a binary file object"""
        hasher = self.new_hasher()
        for chunk in iter(lambda: fd.read(chunk_size), b''):
            hasher.update(chunk)
        return hasher.digest()


class _BufferedHasher:
    """hashlib-style update()/digest() around a one-shot hash function"""

    def __init__(self, func):
        self._func = func
        self._data = bytearray()

    def update(self, data):
        self._data += data

    def digest(self):
        return self._func(bytes(self._data))


# Hash tags follow the RFC4880 hash algorithm ids. Collision attacks don't
# weaken a timestamp: both colliding messages still existed at that time.

class OpSHA1(CryptOp):
    __slots__ = ()
    TAG = 0x02
    TAG_NAME = 'sha1'
    DIGEST_LENGTH = 20

    @staticmethod
    def new_hasher():
        return hashlib.sha1()

class OpRIPEMD160(CryptOp):
    __slots__ = ()
    TAG = 0x03
    TAG_NAME = 'ripemd160'
    DIGEST_LENGTH = 20

    # hashlib only has ripemd160 when OpenSSL provides it
    @staticmethod
    def new_hasher():
        return _BufferedHasher(ripemd160)

class OpSHA256(CryptOp):
    __slots__ = ()
    TAG = 0x08
    TAG_NAME = 'sha256'
    DIGEST_LENGTH = 32

    @staticmethod
    def new_hasher():
        return hashlib.sha256()

class OpKECCAK256(CryptOp):
    __slots__ = ()
    TAG = 0x67
    TAG_NAME = 'keccak256'
    DIGEST_LENGTH = 32

    @staticmethod
    def new_hasher():
        return keccak.new(digest_bits=256)


class UnknownOp(Op):
    """Operation whose tag isn't in OPS_BY_TAG

    Written by a newer implementation. It can't be applied, but keeping it
    lets the proof it came from re-serialize byte for byte. Its argument is
    assumed to be varbytes, possibly empty.
    """
    __slots__ = ()
    TAG_NAME = 'unknown'

    def __new__(cls, tag, arg=b''):
        if not isinstance(tag, int) or isinstance(tag, bool) or not isinstance(arg, bytes):
            raise TypeError('tag must be an int and arg bytes')
        if not 0 <= tag <= 0xff or tag in RESERVED_TAGS:
            raise OpArgValueError('0x%x is not a usable op tag' % tag)
        if tag in OPS_BY_TAG:
            raise OpArgValueError('tag 0x%02x belongs to %s' % (tag, OPS_BY_TAG[tag].__name__))
        if len(arg) > MAX_RESULT_LENGTH:
            raise OpArgValueError('argument too long; %d > %d' % (len(arg), MAX_RESULT_LENGTH))
        return tuple.__new__(cls, (tag, arg))

    @property
    def TAG(self):
        return self[0]

    @property
    def arg(self):
        return self[1]

    def sort_key(self):
        return (self.TAG, (self.arg,))

    def __repr__(self):
        return 'UnknownOp(0x%02x, %r)' % (self.TAG, self.arg)

    def __str__(self):
        return 'unknown(0x%02x) %s' % (self.TAG, binascii.hexlify(self.arg).decode())

    def _apply(self, msg):
        raise MsgValueError('unknown operation 0x%02x can not be applied' % self.TAG)

    def serialize(self, writer):
        super().serialize(writer)
        writer.write_varbytes(self.arg)

    @classmethod
    def deserialize_from_tag(cls, reader, tag, allow_unknown=True):
        return cls(tag, reader.read_varbytes(MAX_RESULT_LENGTH))
