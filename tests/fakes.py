from typing import Any, Dict, List, Optional, Set, Tuple

from tippulse.rpc import GenericRPCError, RPCError

TOKEN_A = "0x" + "a1" * 20
TOKEN_B = "0x" + "b2" * 20
TOPIC = "0x" + "11" * 32

SENDER_1 = "0x" + "01" * 20
SENDER_2 = "0x" + "02" * 20
SENDER_3 = "0x" + "03" * 20


def topic_for(addr: str) -> str:
    return "0x" + "0" * 24 + addr[2:]


def make_log(
    address: str,
    sender: str,
    amount: int,
    block: int,
    tx: Optional[str] = None,
    log_index: int = 0,
) -> Dict[str, Any]:
    return {
        "address": address,
        "topics": [TOPIC, topic_for(sender)],
        "data": hex(amount),
        "blockNumber": hex(block),
        "transactionHash": tx or f"0x{block:064x}",
        "logIndex": hex(log_index),
    }


class FakeEndpoint:
    """In-memory stand-in for EndpointClient."""

    def __init__(self, head: int = 0, logs: Optional[List[Dict[str, Any]]] = None):
        self.head = head
        self.logs: List[Dict[str, Any]] = list(logs or [])
        self.head_error: Optional[RPCError] = None
        self.window_errors: Dict[Tuple[int, int], RPCError] = {}
        self.fail_all_windows: Optional[RPCError] = None
        self.bad_blocks: Set[int] = set()
        self.block_errors: Dict[int, Exception] = {}
        self.log_calls: List[Tuple[str, int, int]] = []
        self.head_calls = 0
        self.block_calls: List[int] = []

    async def head_height(self) -> int:
        self.head_calls += 1
        if self.head_error is not None:
            raise self.head_error
        return self.head

    async def block_time(self, height: int) -> int:
        self.block_calls.append(height)
        if height in self.bad_blocks:
            raise GenericRPCError(f"block {height} not found")
        if height in self.block_errors:
            raise self.block_errors[height]
        return 1_700_000_000 + height * 2

    async def get_logs(self, address, from_height, to_height, topics=None):
        self.log_calls.append((address, from_height, to_height))
        if self.fail_all_windows is not None:
            raise self.fail_all_windows
        err = self.window_errors.get((from_height, to_height))
        if err is not None:
            raise err
        return [
            lg
            for lg in self.logs
            if lg["address"] == address and from_height <= int(lg["blockNumber"], 16) <= to_height
        ]

