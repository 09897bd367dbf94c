"""
Typed on-chain payloads.

Raw web3 log entries are loosely typed (positional tuples or AttributeDicts
depending on ABI component names). They are converted into these tagged
variants at the boundary by `decoder.decode_log`, and nothing past the decoder
touches raw log data.
"""
from typing import Union
from attr import dataclass


@dataclass(frozen=True)
class BlockMeta:
    block_number: int
    transaction_hash: str  # 0x-prefixed
    log_index: int = 0


@dataclass(frozen=True)
class EscrowImmutables:
    order_hash: str  # bytes32 hex
    hashlock: str  # bytes32 hex, hash of the secret
    maker: int  # Address (uint256)
    taker: int  # Address (uint256)
    token: int  # Address (uint256)
    amount: int
    safety_deposit: int
    timelocks: int  # packed Timelocks

    def as_tuple(self) -> tuple:
        """Positional form expected by `addressOfEscrowSrc`."""
        return (
            bytes.fromhex(self.order_hash[2:]),
            bytes.fromhex(self.hashlock[2:]),
            self.maker,
            self.taker,
            self.token,
            self.amount,
            self.safety_deposit,
            self.timelocks,
        )


@dataclass(frozen=True)
class DstImmutablesComplement:
    maker: int  # Address (uint256) on the destination chain
    amount: int
    token: int  # Address (uint256) on the destination chain
    safety_deposit: int
    chain_id: int


@dataclass(frozen=True)
class SrcEscrowCreated:
    immutables: EscrowImmutables
    complement: DstImmutablesComplement
    meta: BlockMeta


@dataclass(frozen=True)
class DstEscrowCreated:
    escrow: str
    hashlock: str
    taker: int
    meta: BlockMeta


@dataclass(frozen=True)
class EscrowWithdrawal:
    escrow: str
    secret: str
    meta: BlockMeta


@dataclass(frozen=True)
class EscrowCancelled:
    escrow: str
    meta: BlockMeta


@dataclass(frozen=True)
class FundsRescued:
    escrow: str
    token: str
    amount: int
    meta: BlockMeta


ChainEvent = Union[
    SrcEscrowCreated, DstEscrowCreated, EscrowWithdrawal, EscrowCancelled, FundsRescued
]

FACTORY_EVENTS = ("SrcEscrowCreated", "DstEscrowCreated")
ESCROW_EVENTS = ("EscrowWithdrawal", "EscrowCancelled", "FundsRescued")
