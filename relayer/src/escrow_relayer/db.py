from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
import contextlib
import enum
import logging
import os
import tempfile
import threading
import time

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .evm_utils import normalize_address

T = TypeVar("T")


class StoreError(Exception):
    """Persisting or loading the store document failed."""


class EscrowStatus(str, enum.Enum):
    PENDING = "pending"
    FUNDED = "funded"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"
    RESCUED = "rescued"


class EscrowEventType(str, enum.Enum):
    ESCROW_CREATED = "EscrowCreated"
    FUNDS_CLAIMED = "FundsClaimed"
    ORDER_CANCELLED = "OrderCancelled"
    FUNDS_RESCUED = "FundsRescued"


class _CamelModel(BaseModel):
    # camelCase on disk and over HTTP, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Timelocks(_CamelModel):
    deployed_at: int = 0
    src_withdrawal: int = 0
    src_cancellation: int = 0
    dst_withdrawal: int = 0
    dst_cancellation: int = 0


class EscrowData(_CamelModel):
    escrow_address: str
    hashlock: str = ""
    maker: str = ""
    taker: str = ""
    token: str = ""
    amount: str = ""
    safety_deposit: str = ""
    timelocks: Timelocks = Field(default_factory=Timelocks)
    order_hash: str = ""
    chain_id: int
    status: EscrowStatus = EscrowStatus.PENDING
    created_at: int = 0  # epoch ms
    updated_at: int = 0  # epoch ms


class EscrowEvent(_CamelModel):
    id: str = ""
    escrow_address: str
    type: EscrowEventType
    hashlock: str = ""
    preimage: Optional[str] = None
    block_number: int
    transaction_hash: str
    chain_id: int
    timestamp: int = 0  # ingestion time, epoch ms
    data: Optional[Dict[str, Any]] = None


class StoreDocument(_CamelModel):
    escrows: List[EscrowData] = Field(default_factory=list)
    events: List[EscrowEvent] = Field(default_factory=list)
    last_processed_block: Dict[int, int] = Field(default_factory=dict)


def event_id(chain_id: int, transaction_hash: str, block_number: int) -> str:
    return f"{chain_id}-{transaction_hash}-{block_number}"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _address_key(address: str) -> str:
    try:
        return normalize_address(address)
    except ValueError:
        return address


class EscrowStore:
    """
    JSON-document store for escrow projections, the event log and per-chain
    checkpoints.

    Every mutation copies the document, applies the change to the copy,
    rewrites the file atomically and only then swaps the copy in, all under one
    lock. A failed write raises `StoreError` and the in-memory state stays as
    it was before the call.
    """

    def __init__(self, path: str = "data/store.json"):
        self.path = path
        self.log = logging.getLogger("EscrowStore")
        self._lock = threading.Lock()
        self._doc = StoreDocument()
        self._opened = False

    # ─────────────────────────────────────────────────────────── lifecycle
    def open(self) -> "EscrowStore":
        with self._lock:
            if os.path.exists(self.path):
                try:
                    with open(self.path, "r", encoding="utf-8") as f:
                        self._doc = StoreDocument.model_validate_json(f.read())
                except (OSError, ValidationError) as e:
                    raise StoreError(f"Unable to load store {self.path}: {e}") from e
                self.log.info(
                    f"Loaded {len(self._doc.escrows)} escrow(s) and "
                    f"{len(self._doc.events)} event(s) from {self.path}"
                )
            else:
                self._doc = StoreDocument()
                self._flush(self._doc)
                self.log.info(f"Created empty store at {self.path}")
            self._opened = True
        return self

    def close(self):
        with self._lock:
            self._opened = False

    def __enter__(self) -> "EscrowStore":
        return self.open()

    def __exit__(self, *exc):
        self.close()

    def _flush(self, doc: StoreDocument):
        directory = os.path.dirname(os.path.abspath(self.path))
        payload = doc.model_dump_json(by_alias=True, indent=2)
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".store-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
            raise StoreError(f"Failed to persist store to {self.path}: {e}") from e

    def _mutate(self, fn: Callable[[StoreDocument], Tuple[bool, T]]) -> T:
        with self._lock:
            if not self._opened:
                raise StoreError("Store is not open")
            doc = self._doc.model_copy(deep=True)
            changed, result = fn(doc)
            if changed:
                self._flush(doc)
                self._doc = doc
            return result

    def _read(self, fn: Callable[[StoreDocument], T]) -> T:
        with self._lock:
            return fn(self._doc)

    # ─────────────────────────────────────────────────────────── escrows
    def record_escrow(self, data: EscrowData) -> EscrowData:
        """Upsert by (escrow_address, chain_id); created_at survives updates."""
        record = data.model_copy(deep=True)
        record.escrow_address = _address_key(record.escrow_address)
        record.hashlock = record.hashlock.lower()

        def apply(doc: StoreDocument):
            now = _now_ms()
            for i, existing in enumerate(doc.escrows):
                if existing.escrow_address == record.escrow_address and existing.chain_id == record.chain_id:
                    record.created_at = existing.created_at
                    record.updated_at = max(now, record.created_at)
                    doc.escrows[i] = record
                    return True, record.model_copy(deep=True)
            record.created_at = record.created_at or now
            record.updated_at = max(now, record.created_at)
            doc.escrows.append(record)
            return True, record.model_copy(deep=True)

        return self._mutate(apply)

    def get_escrow(self, escrow_address: str, chain_id: int) -> Optional[EscrowData]:
        key = _address_key(escrow_address)
        return self._read(lambda doc: next(
            (e.model_copy(deep=True) for e in doc.escrows
             if e.escrow_address == key and e.chain_id == chain_id),
            None,
        ))

    def get_escrow_by_hashlock(self, hashlock: str, chain_id: int) -> Optional[EscrowData]:
        key = hashlock.lower()
        return self._read(lambda doc: next(
            (e.model_copy(deep=True) for e in doc.escrows
             if e.hashlock == key and e.chain_id == chain_id),
            None,
        ))

    def update_escrow_status(self, escrow_address: str, chain_id: int, status: EscrowStatus) -> bool:
        """Returns False when the escrow is unknown (nothing is written)."""
        key = _address_key(escrow_address)

        def apply(doc: StoreDocument):
            for escrow in doc.escrows:
                if escrow.escrow_address == key and escrow.chain_id == chain_id:
                    escrow.status = EscrowStatus(status)
                    escrow.updated_at = max(_now_ms(), escrow.created_at)
                    return True, True
            return False, False

        return self._mutate(apply)

    def get_escrows_by_chain(self, chain_id: int) -> List[EscrowData]:
        return self._read(lambda doc: [e.model_copy(deep=True) for e in doc.escrows if e.chain_id == chain_id])

    def get_escrows_by_status(self, status: EscrowStatus) -> List[EscrowData]:
        status = EscrowStatus(status)
        return self._read(lambda doc: [e.model_copy(deep=True) for e in doc.escrows if e.status == status])

    def get_all_escrows(self) -> List[EscrowData]:
        return self._read(lambda doc: [e.model_copy(deep=True) for e in doc.escrows])

    # ─────────────────────────────────────────────────────────── events
    def record_event(self, event: EscrowEvent) -> bool:
        """Append unless an event with the same id exists. Returns True if appended."""
        record = event.model_copy(deep=True)
        record.id = event_id(record.chain_id, record.transaction_hash, record.block_number)
        record.escrow_address = _address_key(record.escrow_address)
        record.hashlock = record.hashlock.lower()

        def apply(doc: StoreDocument):
            if any(e.id == record.id for e in doc.events):
                self.log.warning(f"Event already recorded: {record.id}")
                return False, False
            record.timestamp = _now_ms()
            doc.events.append(record)
            return True, True

        return self._mutate(apply)

    def get_event(self, record_id: str) -> Optional[EscrowEvent]:
        return self._read(lambda doc: next((e.model_copy(deep=True) for e in doc.events if e.id == record_id), None))

    def get_events_for_escrow(self, escrow_address: str, chain_id: int) -> List[EscrowEvent]:
        key = _address_key(escrow_address)
        return self._read(lambda doc: [
            e.model_copy(deep=True) for e in doc.events
            if e.escrow_address == key and e.chain_id == chain_id
        ])

    def get_events_by_hashlock(self, hashlock: str, chain_id: int) -> List[EscrowEvent]:
        key = hashlock.lower()
        return self._read(lambda doc: [
            e.model_copy(deep=True) for e in doc.events
            if e.hashlock == key and e.chain_id == chain_id
        ])

    def get_all_events(self) -> List[EscrowEvent]:
        return self._read(lambda doc: [e.model_copy(deep=True) for e in doc.events])

    # ─────────────────────────────────────────────────────────── checkpoints
    def set_last_processed_block(self, chain_id: int, block_number: int):
        def apply(doc: StoreDocument):
            current = doc.last_processed_block.get(chain_id, 0)
            if block_number < current:
                self.log.warning(
                    f"Ignoring checkpoint regression on chain {chain_id}: {block_number} < {current}"
                )
                return False, None
            if block_number == current and chain_id in doc.last_processed_block:
                return False, None
            doc.last_processed_block[chain_id] = block_number
            return True, None

        self._mutate(apply)

    def get_last_processed_block(self, chain_id: int) -> int:
        return self._read(lambda doc: doc.last_processed_block.get(chain_id, 0))
