from typing import Any, List
import asyncio, logging

from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from .evm_utils import _abi


class ChainClient:
    """
    Read-only view of an EVM chain: the factory, the escrows it deploys and
    the node itself. web3's HTTP provider is blocking, so every call is pushed
    to a worker thread.
    """

    def __init__(self, rpc_url: str, factory_address: str):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 60}))
        self.w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.factory = self.w3.eth.contract(abi=_abi("EscrowFactory"),
                                            address=self.w3.to_checksum_address(factory_address))
        self.escrow_abi = _abi("BaseEscrow")
        self.log = logging.getLogger("ChainClient")

    def escrow(self, address: str):
        return self.w3.eth.contract(abi=self.escrow_abi, address=self.w3.to_checksum_address(address))

    # ───────────────────────────────────────────────────────────── node
    async def get_block_number(self) -> int:
        return await asyncio.to_thread(lambda: self.w3.eth.block_number)

    async def get_balance(self, address: str) -> int:
        return await asyncio.to_thread(self.w3.eth.get_balance, self.w3.to_checksum_address(address))

    async def get_transaction(self, tx_hash: str) -> Any:
        return await asyncio.to_thread(self.w3.eth.get_transaction, tx_hash)

    async def get_code(self, address: str) -> bytes:
        return await asyncio.to_thread(self.w3.eth.get_code, self.w3.to_checksum_address(address))

    # ───────────────────────────────────────────────────────────── views
    async def address_of_escrow_src(self, immutables: tuple) -> str:
        return await asyncio.to_thread(self.factory.functions.addressOfEscrowSrc(immutables).call)

    async def escrow_immutables(self, address: str) -> tuple:
        return await asyncio.to_thread(self.escrow(address).functions.getImmutables().call)

    # ───────────────────────────────────────────────────────────── logs
    async def factory_logs(self, event_name: str, from_block: int, to_block: int) -> List[Any]:
        event = getattr(self.factory.events, event_name)()
        return await asyncio.to_thread(event.get_logs, from_block=from_block, to_block=to_block)

    async def escrow_logs(self, address: str, event_name: str, from_block: int, to_block: int) -> List[Any]:
        event = getattr(self.escrow(address).events, event_name)()
        return await asyncio.to_thread(event.get_logs, from_block=from_block, to_block=to_block)

    # ───────────────────────────────────────────────────────────── filters
    async def create_factory_filter(self, event_name: str) -> Any:
        event = getattr(self.factory.events, event_name)()
        return await asyncio.to_thread(event.create_filter, from_block="latest")

    async def create_escrow_filter(self, address: str, event_name: str) -> Any:
        event = getattr(self.escrow(address).events, event_name)()
        return await asyncio.to_thread(event.create_filter, from_block="latest")

    async def get_new_entries(self, log_filter: Any) -> List[Any]:
        return await asyncio.to_thread(log_filter.get_new_entries)

    async def uninstall_filter(self, log_filter: Any) -> bool:
        return await asyncio.to_thread(self.w3.eth.uninstall_filter, log_filter.filter_id)
