"""Tests for order and cancellation signing."""
from __future__ import annotations

import dataclasses
import re

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data

from sx_copy.config import CHAIN_IDS, DEFAULT_ORDER_EXPIRY, USDC_ADDRESSES
from sx_copy.errors import SigningError
from sx_copy.models import NewOrder
from sx_copy.wallet import (
    CANCEL_ALL_DOMAIN, CANCEL_EVENT_DOMAIN, CANCEL_ORDERS_DOMAIN, WalletSigner,
    cancel_typed_data, new_salt, order_digest,
)

KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
CHAIN = CHAIN_IDS["testnet"]
MARKET = "0x" + "1f" * 32
EXECUTOR = "0x" + "c" * 40


def make_order(signer: WalletSigner, salt: str | None = None, odds: str = "50500000000000000000") -> NewOrder:
    return NewOrder(
        market_hash=MARKET,
        maker=signer.address,
        total_bet_size="24000000",
        percentage_odds=odds,
        expiry=DEFAULT_ORDER_EXPIRY,
        api_expiry=1_700_086_400,
        base_token=USDC_ADDRESSES["testnet"],
        executor=EXECUTOR,
        salt=salt or new_salt(),
        is_maker_betting_outcome_one=True,
    )


@pytest.fixture
def signer() -> WalletSigner:
    return WalletSigner(KEY, CHAIN)


# ──────────────────────────────────────────────────────────────
# Orders
# ──────────────────────────────────────────────────────────────


class TestOrderSigning:
    def test_address(self, signer: WalletSigner) -> None:
        assert signer.address == Account.from_key(KEY).address

    def test_signature_recovers_to_maker(self, signer: WalletSigner) -> None:
        order = make_order(signer)
        sig = signer.sign_order(order)
        assert sig.startswith("0x") and len(sig) == 132
        recovered = Account.recover_message(encode_defunct(primitive=order_digest(order)), signature=sig)
        assert recovered == signer.address

    def test_digest_covers_fields(self, signer: WalletSigner) -> None:
        salt = new_salt()
        a = order_digest(make_order(signer, salt))
        assert a == order_digest(make_order(signer, salt))
        assert a != order_digest(make_order(signer, new_salt()))
        assert a != order_digest(make_order(signer, salt, odds="50625000000000000000"))
        assert len(a) == 32

    def test_malformed_salt(self, signer: WalletSigner) -> None:
        broken = dataclasses.replace(make_order(signer), salt="0xnothex")
        with pytest.raises(SigningError):
            signer.sign_order(broken)

    def test_invalid_key(self) -> None:
        with pytest.raises(SigningError):
            WalletSigner("0x1234", CHAIN)

    def test_salt_format(self) -> None:
        salt = new_salt()
        assert re.fullmatch(r"0x[0-9a-f]{64}", salt)
        assert salt != new_salt()


# ──────────────────────────────────────────────────────────────
# Cancellations
# ──────────────────────────────────────────────────────────────


class TestCancellationSigning:
    def _recover(self, typed: dict, sig: str) -> str:
        return Account.recover_message(encode_typed_data(full_message=typed), signature=sig)

    def test_cancel_orders(self, signer: WalletSigner) -> None:
        salt = new_salt()
        hashes = ["0x" + "ab" * 32, "0x" + "cd" * 32]
        sig = signer.sign_cancellation(hashes, salt, 1_700_000_000)
        typed = cancel_typed_data(
            CANCEL_ORDERS_DOMAIN, CHAIN, salt,
            [{"name": "orderHashes", "type": "string[]"}, {"name": "timestamp", "type": "uint256"}],
            {"orderHashes": hashes, "timestamp": 1_700_000_000},
        )
        assert self._recover(typed, sig) == signer.address

    def test_cancel_event(self, signer: WalletSigner) -> None:
        salt = new_salt()
        sig = signer.sign_event_cancellation("L1234567", salt, 1_700_000_000)
        typed = cancel_typed_data(
            CANCEL_EVENT_DOMAIN, CHAIN, salt,
            [{"name": "sportXeventId", "type": "string"}, {"name": "timestamp", "type": "uint256"}],
            {"sportXeventId": "L1234567", "timestamp": 1_700_000_000},
        )
        assert self._recover(typed, sig) == signer.address

    def test_cancel_all(self, signer: WalletSigner) -> None:
        salt = new_salt()
        sig = signer.sign_cancel_all(salt, 1_700_000_000)
        typed = cancel_typed_data(CANCEL_ALL_DOMAIN, CHAIN, salt,
                                  [{"name": "timestamp", "type": "uint256"}],
                                  {"timestamp": 1_700_000_000})
        assert self._recover(typed, sig) == signer.address

    def test_domain_is_chain_specific(self, signer: WalletSigner) -> None:
        salt = new_salt()
        other = WalletSigner(KEY, CHAIN_IDS["mainnet"])
        assert signer.sign_cancel_all(salt, 1) != other.sign_cancel_all(salt, 1)

    def test_bad_salt(self, signer: WalletSigner) -> None:
        with pytest.raises(SigningError):
            signer.sign_cancel_all("0x1234", 1)
