from typing import FrozenSet, Optional
import os

import dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .decoder import TimelockEncoding
from .evm_utils import normalize_address


class ConfigError(Exception):
    """Required configuration is missing or invalid."""


class ListenerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    rpc_url: str
    factory_address: str
    chain_id: int
    start_block: Optional[int] = None
    store_path: str = "data/store.json"
    poll_interval: float = 2.0
    timelock_encoding: TimelockEncoding = TimelockEncoding.AUTO
    # destination chain ids whose counterparties are Stellar accounts
    stellar_chain_ids: FrozenSet[int] = frozenset()

    @field_validator("factory_address")
    @classmethod
    def _checksum(cls, value: str) -> str:
        if not value:
            raise ValueError("factory address is empty")
        return normalize_address(value)


def _int_list(raw: str) -> FrozenSet[int]:
    return frozenset(int(part.strip()) for part in raw.split(",") if part.strip())


def get_config_from_env() -> ListenerConfig:
    """Collect the listener configuration once, at process start."""
    dotenv.load_dotenv()
    missing = [name for name in ("RPC_URL", "FACTORY_ADDRESS", "CHAIN_ID") if not os.getenv(name)]
    if missing:
        raise ConfigError(f"{', '.join(missing)} not set")
    try:
        return ListenerConfig(
            rpc_url=os.getenv("RPC_URL"),
            factory_address=os.getenv("FACTORY_ADDRESS"),
            chain_id=os.getenv("CHAIN_ID"),
            start_block=os.getenv("START_BLOCK") or None,
            store_path=os.getenv("STORE_PATH") or "data/store.json",
            poll_interval=os.getenv("POLL_INTERVAL") or 2.0,
            timelock_encoding=(os.getenv("TIMELOCK_ENCODING") or "auto").lower(),
            stellar_chain_ids=_int_list(os.getenv("STELLAR_CHAIN_IDS", "")),
        )
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"Invalid listener configuration: {e}") from e
