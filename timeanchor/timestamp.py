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

"""Helpers for building timestamps"""

import os

from timeanchor.core.op import OpAppend, OpSHA256

def nonce_timestamp(private_timestamp, crypt_op=OpSHA256(), length=16):
    """Commit to private_timestamp behind a random nonce

    Proofs for files stamped together share the upper part of the merkle
    tree. Without a nonce, one file's proof would reveal the digests of its
    neighbours. Returns the timestamp of hash(msg || nonce).
    """
    nonce = os.urandom(length)
    return private_timestamp.ops.add(OpAppend(nonce)).ops.add(crypt_op)
