"""Pytest configuration and fixtures."""

from typing import Any, Dict, List, Tuple

import pytest
from eth_abi.abi import encode as abi_encode
from hexbytes import HexBytes

from escrow_relayer.config import ListenerConfig
from escrow_relayer.db import EscrowStore
from escrow_relayer.decoder import DST_CREATION_SIGNATURES
from escrow_relayer.evm_utils import IMMUTABLES_TUPLE, function_selector
from escrow_relayer.projector import EscrowProjector

CHAIN_ID = 31337
FACTORY = "0x" + "66" * 20
SRC_ESCROW = "0x" + "44" * 20
DST_ESCROW = "0x" + "55" * 20
MAKER = "0x" + "11" * 20
TAKER = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20
ORDER_HASH = "0x" + "aa" * 32
HASHLOCK = "0x" + "bb" * 32
SECRET = "0x" + "cc" * 32
AMOUNT = 9_000_000_000_000
SAFETY_DEPOSIT = 1_000_000_000_000_000

# offsets {0, 3600, 7200, 3600, 7200}
PACKED_TIMELOCKS = 0 | (3600 << 32) | (7200 << 64) | (3600 << 96) | (7200 << 128)


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


def src_immutables(order_hash=ORDER_HASH, hashlock=HASHLOCK, timelocks=PACKED_TIMELOCKS) -> Tuple:
    return (
        bytes(HexBytes(order_hash)),
        bytes(HexBytes(hashlock)),
        int(MAKER, 16),
        int(TAKER, 16),
        int(TOKEN, 16),
        AMOUNT,
        SAFETY_DEPOSIT,
        timelocks,
    )


def src_created_entry(block: int, tx_hash: str, order_hash=ORDER_HASH, hashlock=HASHLOCK,
                      timelocks=PACKED_TIMELOCKS) -> Dict[str, Any]:
    return {
        "event": "SrcEscrowCreated",
        "address": FACTORY,
        "args": {
            "srcImmutables": src_immutables(order_hash, hashlock, timelocks),
            "dstImmutablesComplement": (int(MAKER, 16), 500, 0, 10, 1),
        },
        "blockNumber": block,
        "transactionHash": HexBytes(tx_hash),
        "logIndex": 0,
    }


def dst_created_entry(block: int, tx_hash: str, escrow=DST_ESCROW, hashlock=HASHLOCK) -> Dict[str, Any]:
    return {
        "event": "DstEscrowCreated",
        "address": FACTORY,
        "args": {"escrow": escrow, "hashlock": HexBytes(hashlock), "taker": int(TAKER, 16)},
        "blockNumber": block,
        "transactionHash": HexBytes(tx_hash),
        "logIndex": 0,
    }


def withdrawal_entry(escrow: str, block: int, tx_hash: str, secret=SECRET) -> Dict[str, Any]:
    return {
        "event": "EscrowWithdrawal",
        "address": escrow,
        "args": {"secret": HexBytes(secret)},
        "blockNumber": block,
        "transactionHash": HexBytes(tx_hash),
        "logIndex": 1,
    }


def cancelled_entry(escrow: str, block: int, tx_hash: str) -> Dict[str, Any]:
    return {
        "event": "EscrowCancelled",
        "address": escrow,
        "args": {},
        "blockNumber": block,
        "transactionHash": HexBytes(tx_hash),
        "logIndex": 1,
    }


def rescued_entry(escrow: str, block: int, tx_hash: str, amount: int = 42) -> Dict[str, Any]:
    return {
        "event": "FundsRescued",
        "address": escrow,
        "args": {"token": TOKEN, "amount": amount},
        "blockNumber": block,
        "transactionHash": HexBytes(tx_hash),
        "logIndex": 1,
    }


def dst_creation_calldata(signature: str = DST_CREATION_SIGNATURES[0], hashlock=HASHLOCK) -> bytes:
    args = abi_encode(
        [IMMUTABLES_TUPLE, "uint256"],
        [src_immutables(hashlock=hashlock), 1_700_000_000],
    )
    return function_selector(signature) + args


class FakeFilter:
    def __init__(self, owner: str, event_name: str):
        self.owner = owner
        self.event_name = event_name
        self.filter_id = f"{owner}:{event_name}"
        self.pending: List[Dict[str, Any]] = []


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self, block_number: int = 0):
        self.block_number = block_number
        self.factory_events: Dict[str, List[Dict[str, Any]]] = {"SrcEscrowCreated": [], "DstEscrowCreated": []}
        self.escrow_events: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.addresses: Dict[str, str] = {ORDER_HASH: SRC_ESCROW}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.balances: Dict[str, int] = {}
        self.immutables: Dict[str, Tuple] = {}
        self.calls: List[Tuple] = []
        self.fail: set = set()
        self.failing_escrows: set = set()
        self.filters: List[FakeFilter] = []
        self.uninstalled: List[FakeFilter] = []

    def _call(self, name: str, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise ConnectionError(f"{name} unavailable")

    def calls_to(self, name: str) -> List[Tuple]:
        return [c for c in self.calls if c[0] == name]

    async def get_block_number(self) -> int:
        self._call("get_block_number")
        return self.block_number

    async def get_balance(self, address: str) -> int:
        self._call("get_balance", address)
        return self.balances[address]

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        self._call("get_transaction", tx_hash)
        return self.transactions[tx_hash]

    async def get_code(self, address: str) -> bytes:
        self._call("get_code", address)
        return b"\x60"

    async def address_of_escrow_src(self, immutables: tuple) -> str:
        self._call("address_of_escrow_src", immutables)
        return self.addresses["0x" + immutables[0].hex()]

    async def escrow_immutables(self, address: str) -> tuple:
        self._call("escrow_immutables", address)
        return self.immutables[address]

    async def factory_logs(self, event_name: str, from_block: int, to_block: int):
        self._call("factory_logs", event_name, from_block, to_block)
        return [e for e in self.factory_events[event_name] if from_block <= e["blockNumber"] <= to_block]

    async def escrow_logs(self, address: str, event_name: str, from_block: int, to_block: int):
        self._call("escrow_logs", address, event_name, from_block, to_block)
        if address in self.failing_escrows:
            raise TimeoutError(f"logs for {address} timed out")
        entries = self.escrow_events.get((address, event_name), [])
        return [e for e in entries if from_block <= e["blockNumber"] <= to_block]

    async def create_factory_filter(self, event_name: str) -> FakeFilter:
        self._call("create_factory_filter", event_name)
        log_filter = FakeFilter("factory", event_name)
        self.filters.append(log_filter)
        return log_filter

    async def create_escrow_filter(self, address: str, event_name: str) -> FakeFilter:
        self._call("create_escrow_filter", address, event_name)
        log_filter = FakeFilter(address, event_name)
        self.filters.append(log_filter)
        return log_filter

    async def get_new_entries(self, log_filter: FakeFilter):
        entries, log_filter.pending = log_filter.pending, []
        return entries

    async def uninstall_filter(self, log_filter: FakeFilter) -> bool:
        self.uninstalled.append(log_filter)
        return True

    def add_escrow_event(self, address: str, entry: Dict[str, Any]):
        self.escrow_events.setdefault((address, entry["event"]), []).append(entry)


@pytest.fixture
def store(tmp_path):
    """An isolated, opened store per test."""
    s = EscrowStore(str(tmp_path / "data" / "store.json")).open()
    yield s
    s.close()


@pytest.fixture
def chain():
    return FakeChain(block_number=100)


@pytest.fixture
def config(tmp_path):
    return ListenerConfig(
        rpc_url="http://127.0.0.1:8545",
        factory_address=FACTORY,
        chain_id=CHAIN_ID,
        store_path=str(tmp_path / "data" / "store.json"),
        poll_interval=0.01,
    )


@pytest.fixture
def projector(store, chain):
    return EscrowProjector(store, chain, CHAIN_ID)
