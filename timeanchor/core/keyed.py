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

"""Equality, ordering and hashing derived from a single sort key"""

import operator

def _by_key(compare):
    def method(self, other):
        if isinstance(other, self._key_family):
            return compare(self.sort_key(), other.sort_key())
        return NotImplemented
    return method

class Keyed:
    """Mixin for values that compare by sort_key()

    The first class to inherit from Keyed directly starts a family; only
    members of the same family compare with each other. Keys are expected to
    start with the variant's tag, so different variants order by tag.
    """
    __slots__ = ()

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if Keyed in cls.__bases__:
            cls._key_family = cls

    def sort_key(self):
        raise NotImplementedError

    # Never fall back to another type's equality: an Op is also a tuple, and
    # must not equal a plain tuple of the same contents.
    def __eq__(self, other):
        return isinstance(other, self._key_family) and self.sort_key() == other.sort_key()

    def __ne__(self, other):
        return not self == other

    __lt__ = _by_key(operator.lt)
    __le__ = _by_key(operator.le)
    __gt__ = _by_key(operator.gt)
    __ge__ = _by_key(operator.ge)

    def __hash__(self):
        return hash(self.sort_key())
