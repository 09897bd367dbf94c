from typing import List, Optional
import re

from .db import EscrowData, EscrowEvent, EscrowStatus, EscrowStore
from .evm_utils import normalize_address

HASHLOCK_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class QueryError(ValueError):
    """Malformed query input; reported to clients as a 400."""


class EscrowQuery:
    """Read-only accessors over the store for the HTTP layer."""

    def __init__(self, store: EscrowStore):
        self.store = store

    def list_escrows(self, chain_id: Optional[int] = None, status: Optional[str] = None) -> List[EscrowData]:
        escrows = self.store.get_all_escrows() if chain_id is None else self.store.get_escrows_by_chain(chain_id)
        if status is not None:
            wanted = self._status(status)
            escrows = [e for e in escrows if e.status == wanted]
        return escrows

    def get_escrow(self, escrow_address: str, chain_id: int) -> Optional[EscrowData]:
        return self.store.get_escrow(self._address(escrow_address), chain_id)

    def get_escrow_by_hashlock(self, hashlock: str, chain_id: int) -> Optional[EscrowData]:
        return self.store.get_escrow_by_hashlock(self._hashlock(hashlock), chain_id)

    def list_events(
        self,
        escrow_address: Optional[str] = None,
        hashlock: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> List[EscrowEvent]:
        if (escrow_address or hashlock) and chain_id is None:
            raise QueryError("chain_id is required when filtering by escrow_address or hashlock")
        if escrow_address:
            return self.store.get_events_for_escrow(self._address(escrow_address), chain_id)
        if hashlock:
            return self.store.get_events_by_hashlock(self._hashlock(hashlock), chain_id)
        return self.store.get_all_events()

    def get_last_processed_block(self, chain_id: int) -> int:
        return self.store.get_last_processed_block(chain_id)

    def set_last_processed_block(self, chain_id: int, block_number: int):
        if block_number < 0:
            raise QueryError("block_number must be non-negative")
        self.store.set_last_processed_block(chain_id, block_number)

    @staticmethod
    def _address(escrow_address: str) -> str:
        try:
            return normalize_address(escrow_address)
        except ValueError as e:
            raise QueryError(str(e)) from e

    @staticmethod
    def _hashlock(hashlock: str) -> str:
        if not HASHLOCK_RE.match(hashlock):
            raise QueryError(f"Invalid hashlock: {hashlock}")
        return hashlock.lower()

    @staticmethod
    def _status(status: str) -> EscrowStatus:
        try:
            return EscrowStatus(status)
        except ValueError as e:
            raise QueryError(f"Invalid status: {status}") from e
