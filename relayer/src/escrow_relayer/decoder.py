"""
Chain-native shapes -> canonical data model.

Everything here is a pure transformation except `derive_escrow_address`,
which delegates to an injected read-only contract call.
"""
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence
import enum
import logging
import time

from eth_abi.abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes

from .db import Timelocks
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
from .evm_utils import IMMUTABLES_TUPLE, function_selector, normalize_address, to_hex32

log = logging.getLogger("decoder")

SRC_IMMUTABLES_FIELDS = (
    "orderHash", "hashlock", "maker", "taker", "token", "amount", "safetyDeposit", "timelocks",
)
DST_COMPLEMENT_FIELDS = ("maker", "amount", "token", "safetyDeposit", "chainId")

# Entry points that emit DstEscrowCreated: the factory itself and the resolver wrapper
DST_CREATION_SIGNATURES = (
    f"createDstEscrow({IMMUTABLES_TUPLE},uint256)",
    f"deployDst({IMMUTABLES_TUPLE},uint256)",
)
DST_CREATION_SELECTORS = {function_selector(sig): sig for sig in DST_CREATION_SIGNATURES}

TIMELOCK_MASK = 0xFFFFFFFF
ONE_DAY = 86400
ONE_YEAR = 365 * ONE_DAY


class DecodeError(Exception):
    """Raw chain data did not match the expected ABI shape."""


class TimelockEncoding(str, enum.Enum):
    AUTO = "auto"  # sniff, see parse_timelocks
    PACKED = "packed"  # five 32-bit fields
    TIMESTAMP = "timestamp"  # whole value is the deployment timestamp


def _positional(raw: Any, names: Sequence[str]) -> list:
    if isinstance(raw, Mapping):
        try:
            return [raw[name] for name in names]
        except KeyError as e:
            raise DecodeError(f"Missing field {e} in {dict(raw)}") from e
    try:
        values = list(raw)
    except TypeError as e:
        raise DecodeError(f"Expected a tuple, got {type(raw).__name__}") from e
    if len(values) != len(names):
        raise DecodeError(f"Expected {len(names)} fields, got {len(values)}")
    return values


def decode_src_immutables(raw: Any) -> EscrowImmutables:
    order_hash, hashlock, maker, taker, token, amount, safety_deposit, timelocks = _positional(
        raw, SRC_IMMUTABLES_FIELDS
    )
    try:
        return EscrowImmutables(
            order_hash=to_hex32(order_hash),
            hashlock=to_hex32(hashlock),
            maker=int(maker),
            taker=int(taker),
            token=int(token),
            amount=int(amount),
            safety_deposit=int(safety_deposit),
            timelocks=int(timelocks),
        )
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Malformed immutables: {e}") from e


def decode_dst_complement(raw: Any) -> DstImmutablesComplement:
    maker, amount, token, safety_deposit, chain_id = _positional(raw, DST_COMPLEMENT_FIELDS)
    try:
        return DstImmutablesComplement(
            maker=int(maker),
            amount=int(amount),
            token=int(token),
            safety_deposit=int(safety_deposit),
            chain_id=int(chain_id),
        )
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Malformed destination complement: {e}") from e


async def derive_escrow_address(
    immutables: EscrowImmutables,
    query_fn: Callable[[tuple], Awaitable[str]],
) -> Optional[str]:
    """
    Ask the factory for the deterministic escrow address.
    Returns None when the call fails so callers can keep a partial projection.
    """
    try:
        return normalize_address(await query_fn(immutables.as_tuple()))
    except Exception as e:
        log.warning(f"Escrow address unavailable for order {immutables.order_hash}: {e}")
        return None


def parse_timelocks(
    packed: int,
    now: Optional[int] = None,
    encoding: TimelockEncoding = TimelockEncoding.AUTO,
) -> Timelocks:
    """
    Unpack timelocks: bits 0-31 deployedAt, then srcWithdrawal, srcCancellation,
    dstWithdrawal and dstCancellation in successive 32-bit slots.

    Compatibility shim: two encodings have been deployed. With AUTO, a value
    that reads as a Unix timestamp between one day ago and one year ahead is
    taken to be the deployment time itself, and the stage times are
    synthesized at fixed offsets. Pass an explicit encoding to skip the sniff.
    """
    packed = int(packed)
    encoding = TimelockEncoding(encoding)
    if encoding == TimelockEncoding.AUTO:
        now = int(time.time()) if now is None else now
        if now - ONE_DAY < packed < now + ONE_YEAR:
            encoding = TimelockEncoding.TIMESTAMP
        else:
            encoding = TimelockEncoding.PACKED

    if encoding == TimelockEncoding.TIMESTAMP:
        return Timelocks(
            deployed_at=packed,
            src_withdrawal=packed + 3600,
            src_cancellation=packed + 7200,
            dst_withdrawal=packed + 3600,
            dst_cancellation=packed + 7200,
        )
    return Timelocks(
        deployed_at=packed & TIMELOCK_MASK,
        src_withdrawal=(packed >> 32) & TIMELOCK_MASK,
        src_cancellation=(packed >> 64) & TIMELOCK_MASK,
        dst_withdrawal=(packed >> 96) & TIMELOCK_MASK,
        dst_cancellation=(packed >> 128) & TIMELOCK_MASK,
    )


def decode_dst_creation_calldata(tx_input: Any) -> Dict[str, Any]:
    """
    DstEscrowCreated only carries (escrow, hashlock, taker). The remaining
    immutables are recovered from the calldata of the transaction that created
    the escrow. Returns {} when the input cannot be decoded.
    """
    try:
        data = bytes(HexBytes(tx_input or b""))
        selector, body = data[:4], data[4:]
        signature = DST_CREATION_SELECTORS.get(selector)
        if signature is None:
            log.warning(f"Unknown destination creation selector 0x{selector.hex()}")
            return {}
        raw_immutables, src_cancellation = abi_decode([IMMUTABLES_TUPLE, "uint256"], body)
        immutables = decode_src_immutables(raw_immutables)
    except (DecodingError, DecodeError, TypeError, ValueError) as e:
        log.warning(f"Unable to decode destination creation calldata: {e}")
        return {}
    return {
        "order_hash": immutables.order_hash,
        "hashlock": immutables.hashlock,
        "maker": immutables.maker,
        "taker": immutables.taker,
        "token": immutables.token,
        "amount": immutables.amount,
        "safety_deposit": immutables.safety_deposit,
        "timelocks": immutables.timelocks,
        "src_cancellation_timestamp": int(src_cancellation),
    }


def decode_log(event_name: str, entry: Mapping[str, Any]) -> ChainEvent:
    """Turn a web3 event entry into its tagged variant."""
    try:
        args = entry["args"]
        meta = BlockMeta(
            block_number=int(entry["blockNumber"]),
            transaction_hash=to_hex32(entry["transactionHash"]),
            log_index=int(entry.get("logIndex") or 0),
        )
        if event_name == "SrcEscrowCreated":
            return SrcEscrowCreated(
                immutables=decode_src_immutables(args["srcImmutables"]),
                complement=decode_dst_complement(args["dstImmutablesComplement"]),
                meta=meta,
            )
        if event_name == "DstEscrowCreated":
            return DstEscrowCreated(
                escrow=normalize_address(args["escrow"]),
                hashlock=to_hex32(args["hashlock"]),
                taker=int(args["taker"]),
                meta=meta,
            )
        escrow = normalize_address(entry["address"])
        if event_name == "EscrowWithdrawal":
            return EscrowWithdrawal(escrow=escrow, secret=to_hex32(args["secret"]), meta=meta)
        if event_name == "EscrowCancelled":
            return EscrowCancelled(escrow=escrow, meta=meta)
        if event_name == "FundsRescued":
            return FundsRescued(
                escrow=escrow,
                token=normalize_address(args["token"]),
                amount=int(args["amount"]),
                meta=meta,
            )
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Malformed {event_name} log: {e}") from e
    raise DecodeError(f"Unknown event {event_name}")
