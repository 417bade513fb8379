"""Pytest fixtures: fake HTTP transport, fake ledger, controllable clock."""
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
import requests
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from checkout_payments.core.errors import LedgerError
from checkout_payments.core.ledger import Blockhash, SignatureStatus
from checkout_payments.core.session import PaymentSessionStore
from checkout_payments.core.tokens import AmountCodec


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self) -> Any:
        if self._payload is None:
            raise json.JSONDecodeError("no body", self.text or "", 0)
        return self._payload


class FakeSession:
    """Stand-in for ``requests.Session``; routes by (method, url)."""

    def __init__(self) -> None:
        self.routes: Dict[tuple, Callable[..., Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def route(self, method: str, url: str, response: Any) -> None:
        self.routes[(method, url)] = response if callable(response) else (lambda **_: response)

    def _dispatch(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        handler = self.routes.get((method, url))
        if handler is None:
            raise requests.ConnectionError(f"no route for {method} {url}")
        result = handler(**kwargs)
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._dispatch("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._dispatch("POST", url, **kwargs)


class FakeLedger:
    """In-memory ledger with just the calls the checkout core makes."""

    def __init__(self) -> None:
        self.accounts: set = set()
        self.balances: Dict[str, int] = {}
        self.statuses: Dict[str, Optional[SignatureStatus]] = {}
        self.sent: List[bytes] = []
        self.blockhashes: List[Hash] = []
        self.height = 1000
        self.fail_blockhash = 0
        self.fail_send = 0

    def get_latest_blockhash(self) -> Blockhash:
        if self.fail_blockhash:
            self.fail_blockhash -= 1
            raise LedgerError("blockhash unavailable")
        value = Hash.new_unique()
        self.blockhashes.append(value)
        self.height += 1
        return Blockhash(value=value, last_valid_block_height=self.height + 150)

    def account_exists(self, address: Pubkey) -> bool:
        return str(address) in self.accounts

    def get_token_balance(self, token_account: Pubkey) -> Optional[int]:
        return self.balances.get(str(token_account))

    def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        return self.statuses.get(signature)

    def send_transaction(self, raw: Any, *, skip_preflight: bool = False) -> str:
        if self.fail_send:
            self.fail_send -= 1
            raise LedgerError("Blockhash not found")
        self.sent.append(bytes(raw))
        signature = f"sig{len(self.sent)}"
        return signature

    def confirm(self, signature: str, err: Any = None) -> None:
        self.statuses[signature] = SignatureStatus(
            signature=signature, confirmation_status="confirmed", err=err, slot=1
        )


class Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def merchant_wallet() -> str:
    return str(Keypair().pubkey())


@pytest.fixture
def payer() -> Keypair:
    return Keypair()


@pytest.fixture
def store(clock: Clock) -> PaymentSessionStore:
    return PaymentSessionStore(clock=clock, codec=AmountCodec())


@pytest.fixture
def new_session(store: PaymentSessionStore, merchant_wallet: str):
    def factory(**overrides: Any):
        params = {
            "merchant_id": "merchant_1",
            "merchant_name": "Acme",
            "merchant_wallet": merchant_wallet,
            "amount": "10.00",
            "success_url": "https://shop.example/success",
            "cancel_url": "https://shop.example/cancel",
            "expires_in": 3600,
        }
        params.update(overrides)
        return store.create(**params)

    return factory
