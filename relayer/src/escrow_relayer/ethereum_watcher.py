from typing import Any, Dict, List, Optional, Set, Tuple
import asyncio, logging

from .chain import ChainClient
from .config import ListenerConfig
from .db import EscrowEvent, EscrowEventType, EscrowStatus, EscrowStore, StoreError
from .decoder import DecodeError, decode_log
from .events import ESCROW_EVENTS, FACTORY_EVENTS, ChainEvent
from .projector import EscrowProjector
from .state_machine import TERMINAL_STATUSES

# blocks per backfill query, kept small for public RPC rate limits
BATCH_SIZE = 10


class ListenerConnectionError(Exception):
    """The RPC endpoint could not be reached when starting the watcher."""


class EthereumWatcher:
    """
    Reconciles escrow events from one EVM chain into the store.

    Two paths feed the same `ingest` pipeline: live log filters (factory
    events plus three filters per monitored escrow) and backfill sweeps over
    `[checkpoint + 1, head]` triggered by the block poller. The store drops
    duplicate events, so both paths may deliver the same log.
    """

    def __init__(
        self,
        config: ListenerConfig,
        store: EscrowStore,
        chain: Optional[Any] = None,
        projector: Optional[EscrowProjector] = None,
    ):
        self.config = config
        self.store = store
        self.chain = chain or ChainClient(config.rpc_url, config.factory_address)
        self.projector = projector or EscrowProjector(
            store,
            self.chain,
            config.chain_id,
            timelock_encoding=config.timelock_encoding,
            stellar_chain_ids=config.stellar_chain_ids,
        )
        self.log = logging.getLogger("EthereumWatcher")
        self.is_listening = False
        self.last_processed_block = 0
        self.monitored_escrows: Set[str] = set()
        self._filters: Dict[str, List[Any]] = {}  # owner ("factory" or escrow) -> filters
        self._filter_tasks: Dict[str, List[asyncio.Task]] = {}  # owner -> pollers
        self._tasks: List[asyncio.Task] = []
        self._sweep_lock = asyncio.Lock()
        self._ingest_lock = asyncio.Lock()

    # ───────────────────────────────────────────────────────────── lifecycle
    async def start(self):
        if self.is_listening:
            return
        chain_id = self.config.chain_id
        self.log.info(
            f"Starting event watch on factory {self.config.factory_address} "
            f"(chain {chain_id}, rpc {self.config.rpc_url})"
        )
        try:
            current_block = await self.chain.get_block_number()
        except Exception as e:
            raise ListenerConnectionError(f"Failed to connect to RPC {self.config.rpc_url}: {e}") from e
        self.log.info(f"Connected, current block {current_block}")

        checkpoint = self.store.get_last_processed_block(chain_id)
        if checkpoint:
            self.last_processed_block = checkpoint
        elif self.config.start_block:
            self.last_processed_block = self.config.start_block - 1
        else:
            self.last_processed_block = current_block
        self.log.info(f"Resuming after block {self.last_processed_block}")

        self.is_listening = True
        for escrow in self.store.get_escrows_by_chain(chain_id):
            if escrow.escrow_address and escrow.status not in TERMINAL_STATUSES:
                await self.start_monitoring(escrow.escrow_address)

        for event_name in FACTORY_EVENTS:
            await self._subscribe("factory", event_name, self.chain.create_factory_filter(event_name))
        self._tasks.append(asyncio.create_task(self._watch_blocks()))
        self.log.info(
            f"Watching {', '.join(FACTORY_EVENTS)}, new blocks and "
            f"{len(self.monitored_escrows)} escrow(s)"
        )

    async def stop(self):
        self.is_listening = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for owner, filters in self._filters.items():
            for log_filter in filters:
                try:
                    await self.chain.uninstall_filter(log_filter)
                except Exception as e:
                    self.log.warning(f"Error removing filter for {owner}: {e}")
        self._filters.clear()
        self._filter_tasks.clear()
        self.monitored_escrows.clear()
        self.log.info(f"Stopped event listener for chain {self.config.chain_id}")

    async def wait(self):
        """Block until a watcher task fails; store errors surface here."""
        while self._tasks:
            # timeout so that filters added for new escrows are picked up
            done, _ = await asyncio.wait(
                list(self._tasks), timeout=self.config.poll_interval, return_when=asyncio.FIRST_EXCEPTION
            )
            for task in done:
                if task in self._tasks:
                    self._tasks.remove(task)
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()

    # ───────────────────────────────────────────────────────────── ingestion
    async def ingest(self, event: ChainEvent) -> EscrowEvent:
        """Single reconciliation path for live and backfilled events."""
        async with self._ingest_lock:
            escrow_event = await self.projector.apply(event)
        if escrow_event.type == EscrowEventType.ESCROW_CREATED and escrow_event.escrow_address:
            await self.start_monitoring(escrow_event.escrow_address)
        return escrow_event

    async def _handle_entry(self, event_name: str, entry: Any) -> Optional[EscrowEvent]:
        try:
            event = decode_log(event_name, entry)
        except DecodeError as e:
            self.log.warning(f"Skipping undecodable {event_name} log: {e}")
            return None
        return await self.ingest(event)

    async def start_monitoring(self, escrow_address: str):
        if escrow_address in self.monitored_escrows:
            return
        self.monitored_escrows.add(escrow_address)
        try:
            async with self._ingest_lock:
                await self.projector.enrich(escrow_address)
        except StoreError:
            raise
        except Exception as e:
            self.log.warning(f"Unable to enrich escrow {escrow_address}: {e}")
        if self.is_listening:
            for event_name in ESCROW_EVENTS:
                await self._subscribe(
                    escrow_address, event_name, self.chain.create_escrow_filter(escrow_address, event_name)
                )
        self.log.info(f"📡 Started monitoring escrow: {escrow_address}")

    async def stop_monitoring(self, escrow_address: str):
        self.monitored_escrows.discard(escrow_address)
        tasks = self._filter_tasks.pop(escrow_address, [])
        for task in tasks:
            task.cancel()
            if task in self._tasks:
                self._tasks.remove(task)
        await asyncio.gather(*tasks, return_exceptions=True)
        for log_filter in self._filters.pop(escrow_address, []):
            try:
                await self.chain.uninstall_filter(log_filter)
            except Exception as e:
                self.log.warning(f"Error removing filter for {escrow_address}: {e}")
        self.log.info(f"Stopped monitoring escrow: {escrow_address}")

    def _watched_events(self, escrow_address: str) -> Tuple[str, ...]:
        """Lifecycle events still possible for an escrow, judged by its stored status."""
        escrow = self.store.get_escrow(escrow_address, self.config.chain_id)
        if escrow is None or escrow.status not in TERMINAL_STATUSES:
            return ESCROW_EVENTS
        if escrow.status == EscrowStatus.RESCUED:
            return ()
        return ("FundsRescued",)

    async def _subscribe(self, owner: str, event_name: str, create_filter):
        try:
            log_filter = await create_filter
        except Exception as e:
            self.log.warning(f"Live {event_name} filter unavailable for {owner}, relying on backfill: {e}")
            return
        self._filters.setdefault(owner, []).append(log_filter)
        task = asyncio.create_task(self._poll_filter(event_name, log_filter))
        self._filter_tasks.setdefault(owner, []).append(task)
        self._tasks.append(task)

    async def _poll_filter(self, event_name: str, log_filter: Any):
        while True:
            try:
                for entry in await self.chain.get_new_entries(log_filter):
                    escrow_event = await self._handle_entry(event_name, entry)
                    if escrow_event is not None:
                        self.log.info(f"Live {event_name}: {escrow_event.id}")
            except StoreError as e:
                self.log.critical(f"Store failure while handling {event_name}: {e}")
                raise
            except Exception as e:
                self.log.error(f"Error polling {event_name} filter: {e}")
            await asyncio.sleep(self.config.poll_interval)

    # ───────────────────────────────────────────────────────────── backfill
    async def _watch_blocks(self):
        while True:
            try:
                latest_block = await self.chain.get_block_number()
                if latest_block > self.last_processed_block:
                    await self.process_new_blocks(latest_block)
            except StoreError as e:
                self.log.critical(f"Store failure during backfill: {e}")
                raise
            except Exception as e:
                self.log.error(f"Error processing blocks: {e}")
            await asyncio.sleep(self.config.poll_interval)

    async def process_new_blocks(self, latest_block: int):
        """Sweep batch after batch until caught up or a batch fails."""
        while self.last_processed_block < latest_block:
            if not await self.sweep(latest_block):
                break

    async def sweep(self, latest_block: int) -> bool:
        """
        Backfill one batch of at most BATCH_SIZE blocks after the checkpoint.

        The checkpoint only moves when every query and projection of the batch
        succeeded, so a failed range is retried on the next sweep. Returns
        True when the checkpoint advanced.
        """
        async with self._sweep_lock:
            from_block = self.last_processed_block + 1
            to_block = min(from_block + BATCH_SIZE - 1, latest_block)
            if from_block > to_block:
                return False

            failures = 0
            for event_name in FACTORY_EVENTS:
                try:
                    entries = await self.chain.factory_logs(event_name, from_block, to_block)
                except Exception as e:
                    self.log.error(f"Error querying {event_name} in blocks {from_block}-{to_block}: {e}")
                    failures += 1
                    continue
                for entry in entries:
                    try:
                        escrow_event = await self._handle_entry(event_name, entry)
                    except StoreError:
                        raise
                    except Exception as e:
                        self.log.error(f"Error projecting historical {event_name}: {e}")
                        failures += 1
                        continue
                    if escrow_event is not None:
                        self.log.info(f"Historical {event_name} found: {escrow_event.escrow_address}")

            for escrow_address in list(self.monitored_escrows):
                event_names = self._watched_events(escrow_address)
                if not event_names:
                    await self.stop_monitoring(escrow_address)
                    continue
                if not await self._process_escrow_events(escrow_address, event_names, from_block, to_block):
                    failures += 1

            if failures:
                self.log.warning(
                    f"{failures} failure(s) in blocks {from_block}-{to_block}, "
                    f"checkpoint stays at {self.last_processed_block}"
                )
                return False

            self.store.set_last_processed_block(self.config.chain_id, to_block)
            self.last_processed_block = to_block
            return True

    async def _process_escrow_events(
        self, escrow_address: str, event_names: Tuple[str, ...], from_block: int, to_block: int
    ) -> bool:
        try:
            for event_name in event_names:
                for entry in await self.chain.escrow_logs(escrow_address, event_name, from_block, to_block):
                    escrow_event = await self._handle_entry(event_name, entry)
                    if escrow_event is not None:
                        self.log.info(f"Historical {event_name} for escrow {escrow_address}")
            return True
        except StoreError:
            raise
        except Exception as e:
            self.log.error(f"Error processing events for escrow {escrow_address}: {e}")
            return False
