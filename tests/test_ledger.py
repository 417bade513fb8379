"""Ledger facade over a stand-in solana-py client."""
from types import SimpleNamespace

import pytest
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from checkout_payments.core.errors import LedgerError
from checkout_payments.core.ledger import LedgerClient, SignatureStatus

RPC = "https://rpc.example"


class FakeRpcClient:
    """Answers solana-py client calls from ``results`` keyed by method name."""

    def __init__(self) -> None:
        self.results = {}
        self.calls = []

    def _answer(self, method, *args, **kwargs):
        self.calls.append((method, args, kwargs))
        outcome = self.results[method]
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(value=outcome)

    def __getattr__(self, method):
        return lambda *args, **kwargs: self._answer(method, *args, **kwargs)


def _rpc_error(code, message):
    return RPCException(SimpleNamespace(code=code, message=message))


@pytest.fixture
def node() -> FakeRpcClient:
    return FakeRpcClient()


@pytest.fixture
def rpc(node) -> LedgerClient:
    return LedgerClient(RPC, client=node, timeout=5.0)


def test_latest_blockhash(rpc, node):
    blockhash = Hash.new_unique()
    node.results["get_latest_blockhash"] = SimpleNamespace(blockhash=blockhash, last_valid_block_height=1234)

    latest = rpc.get_latest_blockhash()

    assert latest.value == blockhash
    assert latest.last_valid_block_height == 1234
    assert node.calls[0][1] == ("confirmed",)


def test_malformed_blockhash_is_ledger_error(rpc, node):
    node.results["get_latest_blockhash"] = None
    with pytest.raises(LedgerError):
        rpc.get_latest_blockhash()


def test_account_exists(rpc, node):
    node.results["get_account_info"] = None
    assert not rpc.account_exists(Keypair().pubkey())
    node.results["get_account_info"] = SimpleNamespace(data=b"", lamports=2039280)
    assert rpc.account_exists(Keypair().pubkey())


def test_token_balance(rpc, node):
    node.results["get_token_account_balance"] = SimpleNamespace(amount="2500000", decimals=6)
    assert rpc.get_token_balance(Keypair().pubkey()) == 2_500_000


def test_missing_token_account_has_no_balance(rpc, node):
    node.results["get_token_account_balance"] = _rpc_error(-32602, "Invalid param: could not find account")
    assert rpc.get_token_balance(Keypair().pubkey()) is None


def test_other_rpc_errors_propagate(rpc, node):
    node.results["get_token_account_balance"] = _rpc_error(-32005, "node is behind")
    with pytest.raises(LedgerError) as excinfo:
        rpc.get_token_balance(Keypair().pubkey())
    assert excinfo.value.details["code"] == -32005


def test_signature_status(rpc, node):
    signature = Signature.default()
    node.results["get_signature_statuses"] = [
        SimpleNamespace(slot=7, confirmation_status=TransactionConfirmationStatus.Finalized, err=None)
    ]
    status = rpc.get_signature_status(str(signature))
    assert status.confirmation_status == "finalized"
    assert status.reached("confirmed")
    assert not status.failed
    assert status.slot == 7
    method, args, kwargs = node.calls[0]
    assert args[0] == [signature]
    assert kwargs == {"search_transaction_history": True}

    node.results["get_signature_statuses"] = [None]
    assert rpc.get_signature_status(str(signature)) is None


def test_malformed_signature_is_ledger_error(rpc, node):
    with pytest.raises(LedgerError):
        rpc.get_signature_status("not-a-signature")
    assert node.calls == []


def test_commitment_ordering():
    processed = SignatureStatus("sig", "processed", None)
    assert processed.reached("processed")
    assert not processed.reached("confirmed")
    assert not SignatureStatus("sig", None, None).reached("processed")


def test_send_transaction_passes_raw_bytes(rpc, node):
    signature = Signature.default()
    node.results["send_raw_transaction"] = signature

    assert rpc.send_transaction(b"\x01\x02", skip_preflight=True) == str(signature)

    method, args, kwargs = node.calls[0]
    assert args == (b"\x01\x02",)
    assert kwargs["opts"].skip_preflight
    assert kwargs["opts"].preflight_commitment == "confirmed"


def test_preflight_failure_is_ledger_error(rpc, node):
    node.results["send_raw_transaction"] = _rpc_error(-32002, "Blockhash not found")
    with pytest.raises(LedgerError) as excinfo:
        rpc.send_transaction(b"\x00")
    assert "Blockhash not found" in excinfo.value.message


def test_unreachable_node_is_ledger_error(rpc, node):
    node.results["get_latest_blockhash"] = SolanaRpcException("connection refused")
    with pytest.raises(LedgerError):
        rpc.get_latest_blockhash()
