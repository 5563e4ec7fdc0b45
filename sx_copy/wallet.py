"""Order and cancellation signing for the bot's wallet.

New orders are signed EIP-191 over the packed keccak of their canonical
fields. Cancellations are EIP-712 typed data under the ``*SportX`` domains.
"""
from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, Optional, Sequence

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from web3 import AsyncWeb3, Web3

from .errors import SigningError
from .models import NewOrder

log = logging.getLogger(__name__)

CANCEL_DOMAIN_VERSION = "1.0"
CANCEL_ORDERS_DOMAIN = "CancelOrderV2SportX"
CANCEL_EVENT_DOMAIN = "CancelOrderEventsSportX"
CANCEL_ALL_DOMAIN = "CancelAllOrdersSportX"

ORDER_HASH_TYPES = [
    "bytes32",   # marketHash
    "address",   # baseToken
    "uint256",   # totalBetSize
    "uint256",   # percentageOdds
    "uint256",   # expiry
    "uint256",   # salt
    "address",   # maker
    "address",   # executor
    "bool",      # isMakerBettingOutcomeOne
]

_EIP712_DOMAIN = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "salt", "type": "bytes32"},
]

_ERC20_BALANCE_ABI = [{
    "constant": True,
    "inputs": [{"name": "account", "type": "address"}],
    "name": "balanceOf",
    "outputs": [{"name": "", "type": "uint256"}],
    "type": "function",
}]


def new_salt() -> str:
    """Random 32-byte hex salt."""
    return "0x" + secrets.token_hex(32)


def now_ts() -> int:
    return int(time.time())


def _hex_signature(signed: Any) -> str:
    signature = signed.signature.hex()
    if not signature.startswith("0x"):
        signature = "0x" + signature
    return signature


def _salt_bytes(salt: str) -> bytes:
    text = salt[2:] if salt.startswith("0x") else salt
    raw = bytes.fromhex(text)
    if len(raw) != 32:
        raise ValueError(f"salt must be 32 bytes, got {len(raw)}")
    return raw


def order_digest(order: NewOrder) -> bytes:
    """Packed keccak256 of the order's canonical fields."""
    return Web3.solidity_keccak(ORDER_HASH_TYPES, [
        order.market_hash,
        Web3.to_checksum_address(order.base_token),
        int(order.total_bet_size),
        int(order.percentage_odds),
        int(order.expiry),
        int(order.salt, 16),
        Web3.to_checksum_address(order.maker),
        Web3.to_checksum_address(order.executor),
        bool(order.is_maker_betting_outcome_one),
    ])


def cancel_typed_data(
    domain_name: str,
    chain_id: int,
    salt: str,
    fields: Sequence[Dict[str, str]],
    message: Dict[str, Any],
) -> Dict[str, Any]:
    return {
        "types": {
            "EIP712Domain": _EIP712_DOMAIN,
            "Details": list(fields),
        },
        "primaryType": "Details",
        "domain": {
            "name": domain_name,
            "version": CANCEL_DOMAIN_VERSION,
            "chainId": int(chain_id),
            "salt": _salt_bytes(salt),
        },
        "message": message,
    }


class WalletSigner:
    """Holds the bot's key; every signing failure surfaces as SigningError."""

    def __init__(self, private_key: str, chain_id: int, rpc_url: str = "") -> None:
        try:
            self._account = Account.from_key(private_key)
        except Exception as exc:
            raise SigningError("invalid private key") from exc
        self.chain_id = int(chain_id)
        self.rpc_url = rpc_url

    @property
    def address(self) -> str:
        return self._account.address

    def sign_order(self, order: NewOrder) -> str:
        try:
            signable = encode_defunct(primitive=order_digest(order))
            return _hex_signature(self._account.sign_message(signable))
        except Exception as exc:
            log.error("failed to sign order for market %s: %s", order.market_hash, exc)
            raise SigningError(f"failed to sign order: {exc}") from exc

    def _sign_typed(self, typed_data: Dict[str, Any], what: str) -> str:
        try:
            signable = encode_typed_data(full_message=typed_data)
            return _hex_signature(self._account.sign_message(signable))
        except Exception as exc:
            log.error("failed to sign %s: %s", what, exc)
            raise SigningError(f"failed to sign {what}: {exc}") from exc

    def sign_cancellation(self, order_hashes: Sequence[str], salt: str, timestamp: int) -> str:
        typed = cancel_typed_data(
            CANCEL_ORDERS_DOMAIN, self.chain_id, salt,
            [{"name": "orderHashes", "type": "string[]"},
             {"name": "timestamp", "type": "uint256"}],
            {"orderHashes": list(order_hashes), "timestamp": int(timestamp)},
        )
        return self._sign_typed(typed, "cancellation")

    def sign_event_cancellation(self, sportx_event_id: str, salt: str, timestamp: int) -> str:
        typed = cancel_typed_data(
            CANCEL_EVENT_DOMAIN, self.chain_id, salt,
            [{"name": "sportXeventId", "type": "string"},
             {"name": "timestamp", "type": "uint256"}],
            {"sportXeventId": sportx_event_id, "timestamp": int(timestamp)},
        )
        return self._sign_typed(typed, "event cancellation")

    def sign_cancel_all(self, salt: str, timestamp: int) -> str:
        typed = cancel_typed_data(
            CANCEL_ALL_DOMAIN, self.chain_id, salt,
            [{"name": "timestamp", "type": "uint256"}],
            {"timestamp": int(timestamp)},
        )
        return self._sign_typed(typed, "cancel-all")

    async def token_balance(self, token_address: str) -> Optional[int]:
        """ERC-20 balance of this wallet, or None when the RPC is unavailable."""
        if not self.rpc_url:
            return None
        try:
            w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.rpc_url))
            contract = w3.eth.contract(
                address=Web3.to_checksum_address(token_address),
                abi=_ERC20_BALANCE_ABI,
            )
            return int(await contract.functions.balanceOf(self.address).call())
        except Exception as exc:
            log.warning("balance lookup failed for %s: %s", token_address, exc)
            return None
