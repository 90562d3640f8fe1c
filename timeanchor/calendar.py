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

"""Calendar servers

A calendar accepts digests (POST /digest) and later hands out the growing
timestamp for each commitment it was given (GET /timestamp/<hex>). Replies
are serialized timestamp bodies.
"""

import binascii
import fnmatch
import urllib.error
import urllib.parse
import urllib.request

from timeanchor.core.serialize import from_bytes
from timeanchor.core.timestamp import Timestamp

# no newlines, so a reply can't fake extra lines of our output
_SAFE_MSG_CHARS = frozenset(b'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789#-.,; ')
_MAX_MSG_LENGTH = 160

def get_sanitised_resp_msg(resp):
    """Start of an error reply, safe to show to the user"""
    return ''.join(chr(c) if c in _SAFE_MSG_CHARS else '_' for c in resp.read(_MAX_MSG_LENGTH))


class CalendarError(Exception):
    """Calendar reply we can't use"""


class CommitmentNotFoundError(KeyError):
    """The calendar doesn't know the commitment; reason is its explanation"""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


class RemoteCalendar:
    """Client for one calendar server"""

    MAX_RESPONSE_SIZE = 10000

    def __init__(self, url, user_agent="timeanchor"):
        if not isinstance(url, str):
            raise TypeError("Calendar URL must be a str; got %r" % url.__class__)
        self.url = url
        self.request_headers = {"Accept": "application/vnd.opentimestamps.v1",
                                "User-Agent": user_agent}

    def __repr__(self):
        return 'RemoteCalendar(%r)' % self.url

    def _fetch_timestamp(self, path, msg, data=None, timeout=None):
        """Request path, returning the reply as a timestamp for msg

        HTTP errors propagate as urllib.error.HTTPError.
        """
        req = urllib.request.Request(self.url + path, data=data, headers=self.request_headers)
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            if resp.status != 200:
                raise CalendarError("%s replied with HTTP status %d" % (self.url, resp.status))
            body = resp.read(self.MAX_RESPONSE_SIZE + 1)

        if len(body) > self.MAX_RESPONSE_SIZE:
            raise CalendarError("%s reply is larger than %d bytes" % (self.url, self.MAX_RESPONSE_SIZE))
        return from_bytes(body, Timestamp.deserialize, msg)

    def submit(self, digest, timeout=None):
        """Submit a digest, returning the calendar's timestamp for it"""
        return self._fetch_timestamp('/digest', digest, data=digest, timeout=timeout)

    def get_timestamp(self, commitment, timeout=None):
        """Current timestamp for a previously submitted commitment

        Raises CommitmentNotFoundError if the calendar has never seen it.
        """
        try:
            return self._fetch_timestamp('/timestamp/' + binascii.hexlify(commitment).decode(), commitment,
                                         timeout=timeout)
        except urllib.error.HTTPError as exp:
            if exp.code == 404:
                raise CommitmentNotFoundError(get_sanitised_resp_msg(exp))
            raise


class UrlWhitelist(set):
    """Set of URL patterns, with globbing on the host part

    A pattern given without a scheme allows both http and https. Membership
    tests take a URL; URLs with parameters, a query or a fragment never match.
    """

    def __init__(self, urls=()):
        super().__init__()
        for url in urls:
            self.add(url)

    @staticmethod
    def _split(url):
        parsed = urllib.parse.urlparse(url)
        if parsed.params or parsed.query or parsed.fragment:
            return None
        return (parsed.scheme, parsed.netloc, parsed.path)

    def add(self, url):
        if not isinstance(url, str):
            raise TypeError("URL must be a str; got %r" % url.__class__)

        if '://' not in url:
            for scheme in ('http', 'https'):
                self.add('%s://%s' % (scheme, url))
            return

        pattern = self._split(url)
        if pattern is None:
            raise ValueError("Whitelisted URL %r can't have parameters, a query or a fragment" % url)
        set.add(self, pattern)

    def __contains__(self, url):
        parts = self._split(url)
        if parts is None:
            return False
        scheme, netloc, path = parts
        return any(scheme == p_scheme and path == p_path and fnmatch.fnmatch(netloc, p_netloc)
                   for p_scheme, p_netloc, p_path in self)
