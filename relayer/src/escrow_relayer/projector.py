from typing import Any, Dict, FrozenSet, Optional
import logging

from .db import (
    EscrowData,
    EscrowEvent,
    EscrowEventType,
    EscrowStatus,
    EscrowStore,
    Timelocks,
    event_id,
)
from .decoder import (
    DecodeError,
    TimelockEncoding,
    decode_dst_creation_calldata,
    decode_src_immutables,
    derive_escrow_address,
    parse_timelocks,
)
from .events import (
    BlockMeta,
    ChainEvent,
    DstEscrowCreated,
    DstImmutablesComplement,
    EscrowCancelled,
    EscrowImmutables,
    EscrowWithdrawal,
    FundsRescued,
    SrcEscrowCreated,
)
from .evm_utils import render_address, uint_to_address
from .state_machine import EscrowStateMachine

# Fields that may hold "" when the chain did not give us enough to fill them
PLACEHOLDER_FIELDS = ("hashlock", "maker", "taker", "token", "amount", "safety_deposit", "order_hash")


class EscrowProjector:
    """
    Applies decoded chain events to the store: upserts the escrow projection,
    appends the event log entry and drives status transitions. Every ingestion
    path (live filters and backfill sweeps) goes through `apply`.
    """

    def __init__(
        self,
        store: EscrowStore,
        chain: Any,
        chain_id: int,
        timelock_encoding: TimelockEncoding = TimelockEncoding.AUTO,
        stellar_chain_ids: FrozenSet[int] = frozenset(),
        state_machine: Optional[EscrowStateMachine] = None,
    ):
        self.store = store
        self.chain = chain
        self.chain_id = chain_id
        self.timelock_encoding = timelock_encoding
        self.stellar_chain_ids = stellar_chain_ids
        self.fsm = state_machine or EscrowStateMachine()
        self.log = logging.getLogger("EscrowProjector")

    async def apply(self, event: ChainEvent) -> EscrowEvent:
        if isinstance(event, SrcEscrowCreated):
            return await self.project_source_creation(event.immutables, event.complement, event.meta)
        if isinstance(event, DstEscrowCreated):
            return await self.project_destination_creation(event.escrow, event.hashlock, event.taker, event.meta)
        if isinstance(event, EscrowWithdrawal):
            return self.project_withdrawal(event.secret, event.escrow, event.meta)
        if isinstance(event, EscrowCancelled):
            return self.project_cancellation(event.escrow, event.meta)
        if isinstance(event, FundsRescued):
            return self.project_rescue(event.token, event.amount, event.escrow, event.meta)
        raise TypeError(f"Unsupported chain event {type(event).__name__}")

    # ───────────────────────────────────────────────────────────── creation
    async def project_source_creation(
        self,
        immutables: EscrowImmutables,
        complement: Optional[DstImmutablesComplement],
        meta: BlockMeta,
    ) -> EscrowEvent:
        escrow_address = await derive_escrow_address(immutables, self.chain.address_of_escrow_src)
        timelocks = parse_timelocks(immutables.timelocks, encoding=self.timelock_encoding)
        escrow = EscrowData(
            escrow_address=escrow_address or "",
            hashlock=immutables.hashlock,
            maker=uint_to_address(immutables.maker),
            taker=uint_to_address(immutables.taker),
            token=uint_to_address(immutables.token),
            amount=str(immutables.amount),
            safety_deposit=str(immutables.safety_deposit),
            timelocks=timelocks,
            order_hash=immutables.order_hash,
            chain_id=self.chain_id,
            status=EscrowStatus.PENDING,
        )
        if escrow_address is None:
            self.log.warning(
                f"Source escrow for order {immutables.order_hash} has no address, "
                f"recording event without projection"
            )
        else:
            escrow = self._upsert(escrow, EscrowStatus.PENDING)

        data = self._snapshot(escrow, timelocks.src_withdrawal)
        if complement is not None:
            data.update(self._destination_snapshot(complement))
        return self._record(EscrowEventType.ESCROW_CREATED, escrow.escrow_address, escrow.hashlock, meta, data)

    async def project_destination_creation(
        self,
        escrow_address: str,
        hashlock: str,
        taker: int,
        meta: BlockMeta,
    ) -> EscrowEvent:
        decoded: Dict[str, Any] = {}
        try:
            tx = await self.chain.get_transaction(meta.transaction_hash)
            decoded = decode_dst_creation_calldata(tx["input"])
        except Exception as e:
            self.log.warning(f"Unable to fetch creation transaction {meta.transaction_hash}: {e}")
        if decoded and decoded["hashlock"] != hashlock.lower():
            self.log.warning(
                f"Calldata of {meta.transaction_hash} is for hashlock {decoded['hashlock']}, "
                f"not {hashlock}; ignoring it"
            )
            decoded = {}

        existing = self.store.get_escrow(escrow_address, self.chain_id)
        if "safety_deposit" in decoded:
            safety_deposit = str(decoded["safety_deposit"])
        elif existing is not None and existing.safety_deposit:
            # the balance drains on withdrawal, only the first sighting may use it
            safety_deposit = existing.safety_deposit
        else:
            safety_deposit = ""
            try:
                safety_deposit = str(await self.chain.get_balance(escrow_address))
            except Exception as e:
                self.log.warning(f"Unable to read balance of {escrow_address}: {e}")

        # the other leg may already be known under the same hashlock
        sibling = self.store.get_escrow_by_hashlock(hashlock, self.chain_id)
        timelocks = (
            parse_timelocks(decoded["timelocks"], encoding=self.timelock_encoding)
            if "timelocks" in decoded
            else Timelocks()
        )
        escrow = EscrowData(
            escrow_address=escrow_address,
            hashlock=hashlock,
            maker=uint_to_address(decoded["maker"]) if "maker" in decoded else "",
            taker=uint_to_address(taker),
            token=uint_to_address(decoded["token"]) if "token" in decoded else "",
            amount=str(decoded["amount"]) if "amount" in decoded else "",
            safety_deposit=safety_deposit,
            timelocks=timelocks,
            order_hash=decoded.get("order_hash") or (sibling.order_hash if sibling else ""),
            chain_id=self.chain_id,
            status=EscrowStatus.FUNDED,
            created_at=sibling.created_at if sibling else 0,
        )
        escrow = self._upsert(escrow, EscrowStatus.FUNDED)
        return self._record(
            EscrowEventType.ESCROW_CREATED,
            escrow.escrow_address,
            escrow.hashlock,
            meta,
            self._snapshot(escrow, escrow.timelocks.dst_withdrawal),
        )

    # ───────────────────────────────────────────────────────────── lifecycle
    def project_withdrawal(self, secret: str, escrow_address: str, meta: BlockMeta) -> EscrowEvent:
        escrow = self.store.get_escrow(escrow_address, self.chain_id)
        event = self._record(
            EscrowEventType.FUNDS_CLAIMED,
            escrow_address,
            escrow.hashlock if escrow else "",
            meta,
            self._snapshot(escrow, escrow.timelocks.src_withdrawal if escrow else 0),
            preimage=secret,
        )
        self._transition(escrow_address, escrow, EscrowEventType.FUNDS_CLAIMED)
        return event

    def project_cancellation(self, escrow_address: str, meta: BlockMeta) -> EscrowEvent:
        escrow = self.store.get_escrow(escrow_address, self.chain_id)
        event = self._record(
            EscrowEventType.ORDER_CANCELLED,
            escrow_address,
            escrow.hashlock if escrow else "",
            meta,
            self._snapshot(escrow, escrow.timelocks.src_cancellation if escrow else 0),
        )
        self._transition(escrow_address, escrow, EscrowEventType.ORDER_CANCELLED)
        return event

    def project_rescue(self, token: str, amount: int, escrow_address: str, meta: BlockMeta) -> EscrowEvent:
        escrow = self.store.get_escrow(escrow_address, self.chain_id)
        data = self._snapshot(escrow, escrow.timelocks.src_cancellation if escrow else 0)
        data.update({"rescuedToken": token, "rescuedAmount": str(amount)})
        event = self._record(
            EscrowEventType.FUNDS_RESCUED,
            escrow_address,
            escrow.hashlock if escrow else "",
            meta,
            data,
        )
        self._transition(escrow_address, escrow, EscrowEventType.FUNDS_RESCUED)
        return event

    # ───────────────────────────────────────────────────────────── enrichment
    async def enrich(self, escrow_address: str) -> Optional[EscrowData]:
        """Best-effort fill of placeholder fields from the escrow contract itself."""
        escrow = self.store.get_escrow(escrow_address, self.chain_id)
        if escrow is None:
            return None
        updates: Dict[str, Any] = {}
        timelocks_missing = escrow.timelocks == Timelocks()
        if timelocks_missing or any(not getattr(escrow, f) for f in PLACEHOLDER_FIELDS):
            try:
                immutables = decode_src_immutables(await self.chain.escrow_immutables(escrow_address))
            except DecodeError as e:
                self.log.warning(f"Unexpected immutables from {escrow_address}: {e}")
            except Exception as e:
                self.log.debug(f"getImmutables unavailable for {escrow_address}: {e}")
            else:
                complete = {
                    "hashlock": immutables.hashlock,
                    "maker": uint_to_address(immutables.maker),
                    "taker": uint_to_address(immutables.taker),
                    "token": uint_to_address(immutables.token),
                    "amount": str(immutables.amount),
                    "safety_deposit": str(immutables.safety_deposit),
                    "order_hash": immutables.order_hash,
                }
                updates.update({k: v for k, v in complete.items() if not getattr(escrow, k)})
                if timelocks_missing:
                    updates["timelocks"] = parse_timelocks(immutables.timelocks, encoding=self.timelock_encoding)
        if not escrow.safety_deposit and "safety_deposit" not in updates:
            try:
                updates["safety_deposit"] = str(await self.chain.get_balance(escrow_address))
            except Exception as e:
                self.log.debug(f"Balance unavailable for {escrow_address}: {e}")
        if not updates:
            return escrow
        self.log.info(f"Enriched escrow {escrow_address} with {sorted(updates)}")
        return self.store.record_escrow(escrow.model_copy(update=updates))

    # ───────────────────────────────────────────────────────────── helpers
    def _upsert(self, escrow: EscrowData, initial: EscrowStatus) -> EscrowData:
        existing = self.store.get_escrow(escrow.escrow_address, self.chain_id)
        if existing is not None:
            # re-sighting: keep status, never overwrite data with placeholders
            updates = {f: getattr(escrow, f) for f in PLACEHOLDER_FIELDS if getattr(escrow, f)}
            if escrow.timelocks != Timelocks():
                updates["timelocks"] = escrow.timelocks
            return self.store.record_escrow(existing.model_copy(update=updates))

        history = sorted(
            self.store.get_events_for_escrow(escrow.escrow_address, self.chain_id),
            key=lambda e: e.block_number,
        )
        status = self.fsm.replay(initial, (e.type for e in history))
        if status != initial:
            self.log.info(f"Escrow {escrow.escrow_address} created as {status.value} from earlier events")
        return self.store.record_escrow(escrow.model_copy(update={"status": status}))

    def _transition(self, escrow_address: str, escrow: Optional[EscrowData], event_type: EscrowEventType):
        if escrow is None:
            self.log.info(f"{event_type.value} for unknown escrow {escrow_address} on chain {self.chain_id}")
            return
        status = self.fsm.next_status(escrow.status, event_type)
        if status != escrow.status:
            self.store.update_escrow_status(escrow_address, self.chain_id, status)
            self.log.info(f"Escrow {escrow_address}: {escrow.status.value} -> {status.value}")

    def _record(
        self,
        event_type: EscrowEventType,
        escrow_address: str,
        hashlock: str,
        meta: BlockMeta,
        data: Dict[str, Any],
        preimage: Optional[str] = None,
    ) -> EscrowEvent:
        event = EscrowEvent(
            id=event_id(self.chain_id, meta.transaction_hash, meta.block_number),
            escrow_address=escrow_address,
            type=event_type,
            hashlock=hashlock,
            preimage=preimage,
            block_number=meta.block_number,
            transaction_hash=meta.transaction_hash,
            chain_id=self.chain_id,
            data=data,
        )
        if self.store.record_event(event):
            self.log.info(f"✅ {event_type.value} for {escrow_address or '<unknown>'} on chain {self.chain_id}")
        return self.store.get_event(event.id) or event

    @staticmethod
    def _snapshot(escrow: Optional[EscrowData], timelock: int) -> Dict[str, Any]:
        return {
            "maker": escrow.maker if escrow else "",
            "taker": escrow.taker if escrow else "",
            "token": escrow.token if escrow else "",
            "amount": escrow.amount if escrow else "",
            "timelock": timelock,
        }

    def _destination_snapshot(self, complement: DstImmutablesComplement) -> Dict[str, Any]:
        stellar = complement.chain_id in self.stellar_chain_ids
        return {
            "dstChainId": complement.chain_id,
            "dstMaker": render_address(complement.maker, stellar=stellar),
            "dstToken": render_address(complement.token, stellar=stellar),
            "dstAmount": str(complement.amount),
            "dstSafetyDeposit": str(complement.safety_deposit),
        }
