from typing import Any, Dict, List, Union
import json, os
from hexbytes import HexBytes
from stellar_sdk import StrKey
from web3 import Web3

# ───────────────────────────────────────────────────────────────────── abi
HERE = os.path.dirname(os.path.abspath(__file__))

def _abi(name: str) -> List[Dict[str, Any]]:  # bundled *.json artifacts
    with open(os.path.join(HERE, f"{name}.json")) as f:
        return json.load(f)["abi"]

# IBaseEscrow.Immutables as a flat ABI tuple
IMMUTABLES_TUPLE = "(bytes32,bytes32,uint256,uint256,uint256,uint256,uint256,uint256)"
UINT160_MAX = (1 << 160) - 1

def function_selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])

# ───────────────────────────────────────────────────────────────── addresses
def uint_to_address(value: int) -> str:
    """
    1inch `Address` is a uint256 whose low 160 bits hold the EVM address;
    the upper bits are reserved for flags and are dropped here.
    """
    return Web3.to_checksum_address((int(value) & UINT160_MAX).to_bytes(20, "big"))

def normalize_address(address: str) -> str:
    """Checksum an address; empty stays empty. Raises ValueError when malformed."""
    if not address:
        return ""
    if not Web3.is_address(address):
        raise ValueError(f"Invalid EVM address: {address}")
    return Web3.to_checksum_address(address)

def render_address(value: int, stellar: bool = False) -> str:
    """Render a uint256-encoded counterparty for the chain it lives on."""
    if stellar:
        return StrKey.encode_ed25519_public_key(int(value).to_bytes(32, "big"))
    return uint_to_address(value)

def to_hex32(value: Union[bytes, str, int]) -> str:
    if isinstance(value, int):
        return "0x" + value.to_bytes(32, "big").hex()
    return "0x" + bytes(HexBytes(value)).hex().rjust(64, "0")
