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

"""Sources of Bitcoin block headers

Verifying a Bitcoin attestation needs the merkle root and time of the block at
the attested height. Both explorers here return them as a CBlockHeader, with
the merkle root in internal byte order, so it can be compared directly to the
attested digest.
"""

import json
import logging
import urllib.error
import urllib.request

import bitcoin
import bitcoin.rpc

from bitcoin.core import b2lx, lx, CBlockHeader


class ExplorerError(Exception):
    """The block explorer couldn't give us the block we asked for"""


class BlockExplorer:
    """Esplora-compatible block explorer REST API"""

    MAX_RESPONSE_SIZE = 100000

    def __init__(self, url='https://blockstream.info/api', user_agent="timeanchor", timeout=None):
        if not isinstance(url, str):
            raise TypeError("URL must be a string")
        self.url = url.rstrip('/')
        self.timeout = timeout

        self.request_headers = {"User-Agent": user_agent}

    def __repr__(self):
        return 'BlockExplorer(%r)' % self.url

    def _get(self, path):
        req = urllib.request.Request(self.url + path, headers=self.request_headers)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise ExplorerError("Unknown response from block explorer: %d" % resp.status)
                return resp.read(self.MAX_RESPONSE_SIZE)

        except urllib.error.HTTPError as exp:
            raise ExplorerError("Block explorer returned HTTP %d for %s" % (exp.code, path))

    def block_hash_at(self, height):
        """Return the hash of the block at a given height"""
        hex_hash = self._get('/block-height/%d' % height)
        try:
            block_hash = lx(hex_hash.decode('ascii').strip())
        except ValueError:
            raise ExplorerError("Invalid block hash for height %d: %r" % (height, hex_hash))

        if len(block_hash) != 32:
            raise ExplorerError("Invalid block hash for height %d: %r" % (height, hex_hash))

        logging.debug("Block hash at height %d: %s" % (height, b2lx(block_hash)))
        return block_hash

    def block_info(self, block_hash):
        """Return the merkle root and time of a block, as a CBlockHeader"""
        content = self._get('/block/%s' % b2lx(block_hash))
        try:
            block = json.loads(content.decode('utf8'))
            return CBlockHeader(hashMerkleRoot=lx(block['merkle_root']), nTime=int(block['timestamp']))
        except (KeyError, TypeError, ValueError) as exp:
            raise ExplorerError("Invalid block info for %s: %r" % (b2lx(block_hash), exp))

    def get_block_header(self, height):
        return self.block_info(self.block_hash_at(height))


class RpcBlockExplorer:
    """Block headers from a Bitcoin Core node, over JSON-RPC"""

    def __init__(self, network='mainnet', service_url=None):
        bitcoin.SelectParams(network)

        try:
            self.proxy = bitcoin.rpc.Proxy(service_url=service_url)
        except Exception as exp:
            raise ExplorerError("Could not connect to Bitcoin node: %s" % exp)

    def block_hash_at(self, height):
        try:
            block_hash = self.proxy.getblockhash(height)
        except IndexError:
            raise ExplorerError("Bitcoin block height %d not found" % height)
        except ConnectionError as exp:
            raise ExplorerError("Could not connect to Bitcoin node: %s" % exp)

        logging.debug("Attestation block hash: %s" % b2lx(block_hash))
        return block_hash

    def block_info(self, block_hash):
        try:
            return self.proxy.getblockheader(block_hash)
        except (IndexError, ConnectionError) as exp:
            raise ExplorerError("Could not get block %s: %s" % (b2lx(block_hash), exp))

    def get_block_header(self, height):
        return self.block_info(self.block_hash_at(height))
