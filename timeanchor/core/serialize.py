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

"""Byte codec for proofs

Proofs are built out of a handful of primitives: single bytes, raw byte
strings, LEB128 varuints and varuint-length-prefixed byte strings. A Writer
appends them to a growing buffer; a Reader is a cursor over a fixed buffer
that refuses to read past its end, clamp or pad.
"""

import binascii

class DeserializationError(Exception):
    """The data being decoded is not a valid encoding"""

class BadMagicError(DeserializationError):
    """Leading magic bytes differ from the expected file-format magic"""

    def __init__(self, expected_magic, actual_magic):
        super().__init__('Bad magic bytes: expected %s, got %s' % (binascii.hexlify(expected_magic).decode(),
                                                                  binascii.hexlify(actual_magic).decode()))

class UnsupportedMajorVersion(DeserializationError):
    """The file declares a major version this code can't read"""

class TruncationError(DeserializationError):
    """The buffer ended in the middle of a value"""

class TrailingGarbageError(DeserializationError):
    """Decoding finished with bytes left over"""

class RecursionLimitError(DeserializationError):
    """Nesting exceeded the limit for the structure being decoded"""

class VaruintOverflowError(DeserializationError, ValueError):
    """A varuint decoded to a value out of range for the field being read"""

class SerializerTypeError(TypeError):
    """Value has the wrong type for the primitive being written"""

class SerializerValueError(ValueError):
    """Value has the right type but can't be encoded"""


class Writer:
    """Append-only byte sink"""

    def __init__(self):
        self._buf = bytearray()

    def __len__(self):
        return len(self._buf)

    def getbytes(self):
        return bytes(self._buf)

    def write_byte(self, value):
        if not isinstance(value, int) or isinstance(value, bool):
            raise SerializerTypeError('byte must be an int; got %r' % value.__class__)
        elif not 0 <= value <= 0xff:
            raise SerializerValueError('byte out of range: %d' % value)
        self._buf.append(value)

    def write_bytes(self, value):
        if not isinstance(value, (bytes, bytearray)):
            raise SerializerTypeError('expected bytes; got %r' % value.__class__)
        self._buf += value

    def write_bool(self, value):
        if not isinstance(value, bool):
            raise SerializerTypeError('expected bool; got %r' % value.__class__)
        self._buf.append(0xff if value else 0x00)

    def write_varuint(self, value):
        if not isinstance(value, int) or isinstance(value, bool):
            raise SerializerTypeError('expected int; got %r' % value.__class__)
        elif value < 0:
            raise SerializerValueError('varuint can not be negative: %d' % value)

        # seven bits per byte, least significant group first, high bit set on
        # every byte but the last
        while value > 0x7f:
            self._buf.append(0x80 | (value & 0x7f))
            value >>= 7
        self._buf.append(value)

    def write_varbytes(self, value):
        if not isinstance(value, (bytes, bytearray)):
            raise SerializerTypeError('expected bytes; got %r' % value.__class__)
        self.write_varuint(len(value))
        self._buf += value


class Reader:
    """Cursor over a fixed input buffer"""

    def __init__(self, buf):
        if not isinstance(buf, (bytes, bytearray, memoryview)):
            raise TypeError('expected a bytes-like buffer; got %r' % buf.__class__)
        self._buf = bytes(buf)
        self.pos = 0

    @property
    def remaining(self):
        """Number of bytes not yet consumed"""
        return len(self._buf) - self.pos

    def _take(self, n):
        if n > self.remaining:
            raise TruncationError('needed %d bytes at offset %d, only %d left' % (n, self.pos, self.remaining))
        chunk = self._buf[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def read_byte(self):
        return self._take(1)[0]

    def read_bytes(self, expected_length):
        return self._take(expected_length)

    def read_bool(self):
        b = self.read_byte()
        if b not in (0x00, 0xff):
            raise DeserializationError('bool must be 0x00 or 0xff; got 0x%02x' % b)
        return b == 0xff

    def read_varuint(self, max_int=None):
        """Read a varuint

        Fails with VaruintOverflowError as soon as the value grows past
        max_int, since later groups can only make it bigger.
        """
        value = 0
        shift = 0
        while True:
            b = self.read_byte()
            value |= (b & 0x7f) << shift
            if max_int is not None and value > max_int:
                raise VaruintOverflowError('varuint out of range: %d > %d' % (value, max_int))
            if not b & 0x80:
                return value
            shift += 7

    def read_varbytes(self, max_len, min_len=0):
        length = self.read_varuint(max_int=max_len)
        if length < min_len:
            raise DeserializationError('varbytes too short: %d < %d' % (length, min_len))
        return self._take(length)

    def assert_magic(self, expected_magic):
        actual_magic = self._buf[self.pos:self.pos + len(expected_magic)]
        if actual_magic != expected_magic:
            raise BadMagicError(expected_magic, actual_magic)
        self.pos += len(expected_magic)

    def assert_eof(self):
        if self.remaining:
            raise TrailingGarbageError('%d unexpected bytes after offset %d' % (self.remaining, self.pos))


def to_bytes(obj):
    """Serialize anything with a serialize(writer) method"""
    writer = Writer()
    obj.serialize(writer)
    return writer.getbytes()

def from_bytes(buf, deserialize, *args):
    """Deserialize buf with deserialize(reader, *args), requiring all of it be used"""
    reader = Reader(buf)
    r = deserialize(reader, *args)
    reader.assert_eof()
    return r
