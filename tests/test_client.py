"""Payer-side checkout client."""
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest
from solders.keypair import Keypair

from checkout_payments.core.client import CheckoutClient
from checkout_payments.core.config import CheckoutConfig, ConfigError
from checkout_payments.core.errors import (
    ConfirmationTimeout,
    InsufficientBalance,
    LedgerError,
    TransactionBuildFailed,
)
from checkout_payments.core.models import PaymentStatus
from checkout_payments.core.tracker import StatusTracker

from conftest import FakeResponse

RELAY = "https://relay.example"
USDC_DEVNET = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"


class Ticker:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def _config(merchant_wallet, **extra):
    values = {
        "CHECKOUT_MERCHANT_WALLET": merchant_wallet,
        "CHECKOUT_MERCHANT_NAME": "Acme",
        "CHECKOUT_BASE_URL": "https://pay.example",
    }
    values.update(extra)
    return CheckoutConfig.from_mapping(values)


@pytest.fixture
def relay_fee_payer():
    return Keypair().pubkey()


@pytest.fixture
def relay_config(relay_fee_payer):
    return {
        "feePayer": str(relay_fee_payer),
        "endpoints": {
            "transfer": {
                "tokens": [
                    {
                        "mint": USDC_DEVNET,
                        "symbol": "USDC",
                        "decimals": 6,
                        "fee": 10_000,
                        "account": str(Keypair().pubkey()),
                    }
                ]
            }
        },
    }


def _client(config, fake_session, ledger, timeout=10.0):
    client = CheckoutClient(config, session=fake_session, ledger=ledger)
    ticker = Ticker()
    client.tracker = StatusTracker(ledger, interval=1.0, timeout=timeout, sleep=ticker.sleep, clock=ticker)
    return client


@pytest.fixture
def client(merchant_wallet, fake_session, ledger) -> CheckoutClient:
    return _client(_config(merchant_wallet), fake_session, ledger)


@pytest.fixture
def gasless_client(merchant_wallet, fake_session, ledger, relay_config) -> CheckoutClient:
    fake_session.route("GET", RELAY, FakeResponse(200, relay_config))
    return _client(_config(merchant_wallet, CHECKOUT_RELAY_URL=RELAY), fake_session, ledger)


def _fund(client, owner, atomic, token="USDC"):
    client.ledger.balances[str(client.builder.token_account(owner, token))] = atomic


def test_create_payment_link(client, merchant_wallet):
    payment = client.create_payment(
        "29.99", memo="Order #42", order_id="42", success_url="https://shop.example/ok", now=1000.0
    )

    assert payment.status is PaymentStatus.PENDING
    assert payment.amount == Decimal("29.99")
    assert payment.amount_lamports == 29_990_000
    assert payment.expires_at == 1000.0 + 3600
    parsed = urlparse(payment.checkout_url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://pay.example/pay"
    query = parse_qs(parsed.query)
    assert query["amount"] == ["29.99"]
    assert query["merchant"] == ["Acme"]
    assert query["to"] == [merchant_wallet]
    assert query["memo"] == ["Order #42"]
    assert query["paymentId"] == [payment.id]
    assert "cancelUrl" not in query


def test_create_payment_requires_a_wallet(fake_session, ledger):
    client = CheckoutClient(CheckoutConfig.from_mapping({}), session=fake_session, ledger=ledger)
    with pytest.raises(ConfigError):
        client.create_payment("1")


def test_ensure_balance(client, payer):
    _fund(client, payer.pubkey(), 5_000_000)
    assert client.ensure_balance(payer.pubkey(), "5") == 5_000_000
    with pytest.raises(InsufficientBalance) as excinfo:
        client.ensure_balance(payer.pubkey(), "5", fee_atomic=1)
    assert excinfo.value.details["required"] == 5_000_001


def test_missing_token_account_is_zero_balance(client, payer):
    with pytest.raises(InsufficientBalance):
        client.ensure_balance(payer.pubkey(), "0.01")


def test_build_retries_once_with_fresh_blockhash(client, ledger, payer):
    ledger.fail_blockhash = 1
    built = client.build_transaction(payer=payer.pubkey(), amount="1")
    assert len(ledger.blockhashes) == 1
    assert built.amount_atomic == 1_000_000


def test_build_gives_up_after_second_failure(client, ledger, payer):
    ledger.fail_blockhash = 2
    with pytest.raises(TransactionBuildFailed):
        client.build_transaction(payer=payer.pubkey(), amount="1")


def test_gasless_without_relay_is_standard(client, payer):
    built = client.build_gasless(payer=payer.pubkey(), amount="1")
    assert not built.sponsored


def test_gasless_build_is_sponsored(gasless_client, payer, relay_fee_payer):
    built = gasless_client.build_gasless(payer=payer.pubkey(), amount="1")
    assert built.sponsored
    assert built.fee_payer == relay_fee_payer
    assert built.fee_atomic == 10_000


def test_gasless_falls_back_when_token_not_sponsored(
    merchant_wallet, fake_session, ledger, relay_config, payer
):
    fake_session.route("GET", RELAY, FakeResponse(200, relay_config))
    config = _config(merchant_wallet, CHECKOUT_RELAY_URL=RELAY, CHECKOUT_NETWORK="mainnet-beta")
    client = _client(config, fake_session, ledger)

    built = client.build_gasless(payer=payer.pubkey(), amount="1", token="USDT")

    assert not built.sponsored
    assert built.token == "USDT"
    assert built.fee_atomic == 0


def test_gasless_rejection_retried_once_then_standard(
    merchant_wallet, fake_session, ledger, relay_config, payer
):
    relay_config["endpoints"]["transfer"]["tokens"][0]["fee"] = -5
    fake_session.route("GET", RELAY, FakeResponse(200, relay_config))
    client = _client(_config(merchant_wallet, CHECKOUT_RELAY_URL=RELAY), fake_session, ledger)

    built = client.build_gasless(payer=payer.pubkey(), amount="1")

    assert not built.sponsored
    assert built.fee_atomic == 0
    assert [c["method"] for c in fake_session.calls] == ["GET", "GET"]


def test_pay_confirms(client, ledger, payer):
    _fund(client, payer.pubkey(), 50_000_000)
    ledger.confirm("sig1")

    receipt = client.pay(payer, "10.00", memo="order-1")

    assert receipt.confirmed
    assert receipt.signature == "sig1"
    assert not receipt.gasless
    assert receipt.amount_atomic == 10_000_000
    assert receipt.created_recipient_account
    assert len(ledger.sent) == 1


def test_pay_checks_balance_before_broadcast(client, ledger, payer):
    _fund(client, payer.pubkey(), 1_000_000)
    with pytest.raises(InsufficientBalance):
        client.pay(payer, "10.00")
    assert ledger.sent == []
    assert ledger.blockhashes == []


def test_gasless_balance_check_includes_fee(gasless_client, ledger, payer):
    _fund(gasless_client, payer.pubkey(), 1_000_000)
    with pytest.raises(InsufficientBalance):
        gasless_client.pay(payer, "1", gasless=True)
    assert ledger.blockhashes == []
    assert [c["method"] for c in gasless_client.session.calls] == ["GET"]


def test_pay_rebuilds_once_after_broadcast_failure(client, ledger, payer):
    _fund(client, payer.pubkey(), 50_000_000)
    ledger.fail_send = 1
    ledger.confirm("sig1")

    receipt = client.pay(payer, "1")

    assert receipt.signature == "sig1"
    assert len(ledger.blockhashes) == 2


def test_gasless_pay_goes_through_relay(gasless_client, fake_session, ledger, payer):
    _fund(gasless_client, payer.pubkey(), 50_000_000)
    fake_session.route("POST", f"{RELAY}/transfer", FakeResponse(200, {"signature": "relaysig"}))
    ledger.confirm("relaysig")

    receipt = gasless_client.pay(payer, "1", gasless=True)

    assert receipt.gasless
    assert receipt.signature == "relaysig"
    assert receipt.fee_atomic == 10_000
    assert ledger.sent == []


def test_relay_submit_outage_pays_fees_directly(gasless_client, fake_session, ledger, payer):
    _fund(gasless_client, payer.pubkey(), 50_000_000)
    fake_session.route("POST", f"{RELAY}/transfer", FakeResponse(503, None, text="down"))
    ledger.confirm("sig1")

    receipt = gasless_client.pay(payer, "1", gasless=True)

    assert not receipt.gasless
    assert receipt.signature == "sig1"
    assert receipt.fee_atomic == 0


def test_relay_refusal_pays_fees_directly(gasless_client, fake_session, ledger, payer):
    _fund(gasless_client, payer.pubkey(), 50_000_000)
    fake_session.route("POST", f"{RELAY}/transfer", FakeResponse(400, {"error": "unexpected instruction"}))
    ledger.confirm("sig1")

    receipt = gasless_client.pay(payer, "1", gasless=True)

    assert not receipt.gasless
    assert receipt.signature == "sig1"
    assert receipt.fee_atomic == 0
    relay_posts = [c for c in fake_session.calls if c["url"] == f"{RELAY}/transfer"]
    assert len(relay_posts) == 2
    assert len(ledger.sent) == 1


def test_relay_refusal_then_fresh_build_accepted(gasless_client, fake_session, ledger, payer):
    _fund(gasless_client, payer.pubkey(), 50_000_000)
    answers = [
        FakeResponse(400, {"error": "blockhash expired"}),
        FakeResponse(200, {"signature": "relaysig"}),
    ]
    fake_session.route("POST", f"{RELAY}/transfer", lambda **_: answers.pop(0))
    ledger.confirm("relaysig")

    receipt = gasless_client.pay(payer, "1", gasless=True)

    assert receipt.gasless
    assert receipt.signature == "relaysig"
    assert len(ledger.blockhashes) == 2
    assert ledger.sent == []


def test_pay_times_out(merchant_wallet, fake_session, ledger, payer):
    client = _client(_config(merchant_wallet), fake_session, ledger, timeout=3.0)
    _fund(client, payer.pubkey(), 50_000_000)
    with pytest.raises(ConfirmationTimeout) as excinfo:
        client.pay(payer, "1")
    assert excinfo.value.details["signature"] == "sig1"


def test_pay_fails_on_chain_error(client, ledger, payer):
    _fund(client, payer.pubkey(), 50_000_000)
    ledger.confirm("sig1", err={"InstructionError": [0, "Custom"]})
    with pytest.raises(LedgerError):
        client.pay(payer, "1")


def test_describe(gasless_client):
    info = gasless_client.describe()
    assert info["network"] == "devnet"
    assert info["gasless"] is True
    assert "USDC" in info["tokens"]
