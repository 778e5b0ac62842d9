"""
Payment Verifier - Chain Reader
Thin wrapper around a web3 HTTP client for one EVM chain: head number,
blocks with transaction bodies, and contract event logs over a block range.

No retries here. A failed RPC call aborts the run and the next scheduled
run rescans an overlapping window.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from web3 import Web3

from .config import CHAIN, ERC20_ABI, BLOCK_BATCH_SIZE, LOG_CHUNK_SIZE, RPC_TIMEOUT

logger = logging.getLogger(__name__)


class ChainReader:
    """Read-only access to the chain. Construct once per process and pass it around."""

    def __init__(self, rpc_url=None, w3=None, batch_size=BLOCK_BATCH_SIZE,
                 log_chunk_size=LOG_CHUNK_SIZE, timeout=RPC_TIMEOUT):
        self.rpc_url = rpc_url or CHAIN["rpc"]
        self.w3 = w3 or Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": timeout}))
        self.batch_size = max(1, int(batch_size))
        self.log_chunk_size = max(1, int(log_chunk_size))
        self._contracts = {}

    def latest_block_number(self):
        return self.w3.eth.block_number

    def get_block(self, number, full_transactions=False):
        return self.w3.eth.get_block(number, full_transactions=full_transactions)

    def iter_blocks(self, from_block, to_block, full_transactions=True):
        """
        Yield blocks from_block..to_block (inclusive) in order.
        Blocks are fetched batch_size at a time, concurrently within a batch.
        """
        if from_block > to_block:
            return
        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for batch_start in range(from_block, to_block + 1, self.batch_size):
                batch = range(batch_start, min(batch_start + self.batch_size, to_block + 1))
                blocks = pool.map(lambda n: self.get_block(n, full_transactions), batch)
                for block in blocks:
                    yield block

    def _contract(self, address):
        key = address.lower()
        if key not in self._contracts:
            self._contracts[key] = self.w3.eth.contract(
                address=Web3.to_checksum_address(address),
                abi=ERC20_ABI
            )
        return self._contracts[key]

    def token_decimals(self, address):
        """Read decimals() from an ERC-20 contract."""
        return self._contract(address).functions.decimals().call()

    def get_logs(self, address, event_name, argument_filters, from_block, to_block):
        """
        Decoded event logs emitted by `address` for `event_name`, filtered on
        indexed arguments, over from_block..to_block (inclusive).
        The range is split into log_chunk_size pieces to stay under provider limits.
        """
        event = getattr(self._contract(address).events, event_name)
        logs = []
        for chunk_start in range(from_block, to_block + 1, self.log_chunk_size):
            chunk_end = min(chunk_start + self.log_chunk_size - 1, to_block)
            logger.debug("Fetching %s logs of %s in blocks %d-%d", event_name, address, chunk_start, chunk_end)
            logs.extend(event.get_logs(
                argument_filters=argument_filters,
                from_block=chunk_start,
                to_block=chunk_end,
            ))
        return logs
