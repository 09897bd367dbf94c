"""Tests for applying decoded chain events to the store."""

import pytest

from escrow_relayer.db import EscrowEventType, EscrowStatus, Timelocks
from escrow_relayer.decoder import decode_log
from escrow_relayer.projector import EscrowProjector

from conftest import (
    AMOUNT,
    CHAIN_ID,
    DST_ESCROW,
    HASHLOCK,
    MAKER,
    ORDER_HASH,
    SAFETY_DEPOSIT,
    SECRET,
    SRC_ESCROW,
    TAKER,
    TOKEN,
    cancelled_entry,
    dst_created_entry,
    dst_creation_calldata,
    rescued_entry,
    src_created_entry,
    src_immutables,
    tx,
    withdrawal_entry,
)

OFFSETS = Timelocks(deployed_at=0, src_withdrawal=3600, src_cancellation=7200, dst_withdrawal=3600, dst_cancellation=7200)


async def apply(projector, name, entry):
    return await projector.apply(decode_log(name, entry))


class TestSourceCreation:
    @pytest.mark.asyncio
    async def test_scenario_a(self, projector, store):
        event = await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))

        escrows = store.get_all_escrows()
        assert len(escrows) == 1
        escrow = escrows[0]
        assert escrow.escrow_address == SRC_ESCROW
        assert escrow.status == EscrowStatus.PENDING
        assert escrow.order_hash == ORDER_HASH
        assert escrow.hashlock == HASHLOCK
        assert escrow.maker == MAKER
        assert escrow.taker == TAKER
        assert escrow.token == TOKEN
        assert escrow.amount == str(AMOUNT)
        assert escrow.safety_deposit == str(SAFETY_DEPOSIT)
        assert escrow.timelocks == OFFSETS

        events = store.get_all_events()
        assert len(events) == 1
        assert events[0].type == EscrowEventType.ESCROW_CREATED
        assert events[0].escrow_address == SRC_ESCROW
        assert event.id == events[0].id == f"{CHAIN_ID}-{tx(1)}-101"
        assert events[0].data["timelock"] == 3600
        assert events[0].data["dstChainId"] == 1

    @pytest.mark.asyncio
    async def test_unavailable_address_records_event_without_projection(self, projector, store, chain):
        chain.addresses.clear()
        event = await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        assert event.escrow_address == ""
        assert store.get_all_escrows() == []
        assert len(store.get_all_events()) == 1

    @pytest.mark.asyncio
    async def test_resighting_is_idempotent(self, projector, store):
        await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        created_at = store.get_escrow(SRC_ESCROW, CHAIN_ID).created_at
        await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        assert len(store.get_all_escrows()) == 1
        assert len(store.get_all_events()) == 1
        assert store.get_escrow(SRC_ESCROW, CHAIN_ID).created_at == created_at

    @pytest.mark.asyncio
    async def test_returns_the_stored_record(self, projector, store):
        first = await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        stored = store.get_all_events()[0]
        assert first.timestamp > 0
        assert first == stored

        again = await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        assert again.timestamp == stored.timestamp

    @pytest.mark.asyncio
    async def test_stellar_destination_is_rendered_as_strkey(self, store, chain):
        projector = EscrowProjector(store, chain, CHAIN_ID, stellar_chain_ids=frozenset({1}))
        event = await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        assert event.data["dstMaker"].startswith("G")
        assert event.data["dstAmount"] == "500"


class TestDestinationCreation:
    @pytest.mark.asyncio
    async def test_recovers_immutables_from_calldata(self, projector, store, chain):
        chain.transactions[tx(2)] = {"input": dst_creation_calldata()}
        chain.balances[DST_ESCROW] = 5
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))

        escrow = store.get_escrow(DST_ESCROW, CHAIN_ID)
        assert escrow.status == EscrowStatus.FUNDED
        assert escrow.maker == MAKER
        assert escrow.taker == TAKER
        assert escrow.token == TOKEN
        assert escrow.amount == str(AMOUNT)
        assert escrow.safety_deposit == str(SAFETY_DEPOSIT)
        assert escrow.timelocks == OFFSETS
        assert escrow.order_hash == ORDER_HASH
        assert store.get_all_events()[0].type == EscrowEventType.ESCROW_CREATED

    @pytest.mark.asyncio
    async def test_undecodable_calldata_leaves_placeholders(self, projector, store, chain):
        chain.transactions[tx(2)] = {"input": b"\x00\x01\x02"}
        chain.balances[DST_ESCROW] = 777
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))

        escrow = store.get_escrow(DST_ESCROW, CHAIN_ID)
        assert escrow.status == EscrowStatus.FUNDED
        assert escrow.taker == TAKER
        assert (escrow.maker, escrow.token, escrow.amount) == ("", "", "")
        assert escrow.safety_deposit == "777"
        assert escrow.timelocks == Timelocks()

    @pytest.mark.asyncio
    async def test_rpc_failures_do_not_fail_ingestion(self, projector, store, chain):
        chain.fail.update({"get_transaction", "get_balance"})
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))
        escrow = store.get_escrow(DST_ESCROW, CHAIN_ID)
        assert escrow.safety_deposit == ""
        assert len(store.get_all_events()) == 1

    @pytest.mark.asyncio
    async def test_calldata_for_another_hashlock_is_ignored(self, projector, store, chain):
        chain.transactions[tx(2)] = {"input": dst_creation_calldata(hashlock="0x" + "ee" * 32)}
        chain.balances[DST_ESCROW] = 1
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))
        assert store.get_escrow(DST_ESCROW, CHAIN_ID).maker == ""

    @pytest.mark.asyncio
    async def test_duplicate_delivery_keeps_first_safety_deposit(self, projector, store, chain):
        chain.transactions[tx(2)] = {"input": b""}
        chain.balances[DST_ESCROW] = 10
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))

        # drained by a withdrawal before the backfill delivers the same log
        chain.balances[DST_ESCROW] = 0
        chain.calls.clear()
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))

        assert store.get_escrow(DST_ESCROW, CHAIN_ID).safety_deposit == "10"
        assert chain.calls_to("get_balance") == []
        assert len(store.get_all_events()) == 1

    @pytest.mark.asyncio
    async def test_second_leg_keeps_first_leg_created_at(self, projector, store, chain):
        await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        chain.transactions[tx(2)] = {"input": b""}
        chain.balances[DST_ESCROW] = 1
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))

        src = store.get_escrow(SRC_ESCROW, CHAIN_ID)
        dst = store.get_escrow(DST_ESCROW, CHAIN_ID)
        assert dst.created_at == src.created_at
        assert dst.order_hash == ORDER_HASH


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_scenario_b(self, projector, store):
        await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        original = store.get_all_events()[0].model_dump()

        event = await apply(projector, "EscrowWithdrawal", withdrawal_entry(SRC_ESCROW, 110, tx(3)))

        assert store.get_escrow(SRC_ESCROW, CHAIN_ID).status == EscrowStatus.WITHDRAWN
        events = store.get_all_events()
        assert len(events) == 2
        assert events[0].model_dump() == original
        assert events[1].type == EscrowEventType.FUNDS_CLAIMED
        assert events[1].preimage == SECRET
        assert events[1].hashlock == HASHLOCK
        assert events[1].data["maker"] == MAKER
        assert event.preimage == SECRET

    @pytest.mark.asyncio
    async def test_cancellation_of_funded_escrow(self, projector, store, chain):
        chain.balances[DST_ESCROW] = 1
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))
        await apply(projector, "EscrowCancelled", cancelled_entry(DST_ESCROW, 120, tx(4)))
        assert store.get_escrow(DST_ESCROW, CHAIN_ID).status == EscrowStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_rescue(self, projector, store):
        await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        event = await apply(projector, "FundsRescued", rescued_entry(SRC_ESCROW, 130, tx(5), amount=9))
        assert store.get_escrow(SRC_ESCROW, CHAIN_ID).status == EscrowStatus.RESCUED
        assert event.type == EscrowEventType.FUNDS_RESCUED
        assert event.data["rescuedAmount"] == "9"
        assert event.data["rescuedToken"] == TOKEN

    @pytest.mark.asyncio
    async def test_terminal_escrow_is_not_reverted(self, projector, store):
        await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        await apply(projector, "EscrowCancelled", cancelled_entry(SRC_ESCROW, 120, tx(4)))
        await apply(projector, "EscrowWithdrawal", withdrawal_entry(SRC_ESCROW, 121, tx(6)))
        await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        assert store.get_escrow(SRC_ESCROW, CHAIN_ID).status == EscrowStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_event_for_unknown_escrow_is_recorded(self, projector, store):
        event = await apply(projector, "EscrowWithdrawal", withdrawal_entry(SRC_ESCROW, 110, tx(3)))
        assert event.hashlock == ""
        assert store.get_all_escrows() == []
        assert len(store.get_all_events()) == 1

    @pytest.mark.asyncio
    async def test_out_of_order_withdrawal_is_replayed_on_creation(self, projector, store, chain):
        await apply(projector, "EscrowWithdrawal", withdrawal_entry(DST_ESCROW, 110, tx(3)))
        chain.balances[DST_ESCROW] = 0
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))
        assert store.get_escrow(DST_ESCROW, CHAIN_ID).status == EscrowStatus.WITHDRAWN


class TestEnrich:
    @pytest.mark.asyncio
    async def test_fills_placeholders_from_escrow_view(self, projector, store, chain):
        chain.transactions[tx(2)] = {"input": b""}
        chain.balances[DST_ESCROW] = 3
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))
        chain.immutables[DST_ESCROW] = src_immutables()

        escrow = await projector.enrich(DST_ESCROW)

        assert escrow.maker == MAKER
        assert escrow.token == TOKEN
        assert escrow.amount == str(AMOUNT)
        assert escrow.safety_deposit == "3"
        assert escrow.timelocks == OFFSETS
        assert escrow.status == EscrowStatus.FUNDED

        # a later re-sighting with no calldata keeps the enriched fields
        await apply(projector, "DstEscrowCreated", dst_created_entry(105, tx(2)))
        assert store.get_escrow(DST_ESCROW, CHAIN_ID).maker == MAKER

    @pytest.mark.asyncio
    async def test_unknown_escrow(self, projector):
        assert await projector.enrich(DST_ESCROW) is None

    @pytest.mark.asyncio
    async def test_complete_escrow_needs_no_rpc(self, projector, chain):
        await apply(projector, "SrcEscrowCreated", src_created_entry(101, tx(1)))
        chain.calls.clear()
        await projector.enrich(SRC_ESCROW)
        assert chain.calls == []
