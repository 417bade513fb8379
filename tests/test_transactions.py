"""Transfer transaction construction."""
import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.instructions import decode_transfer_checked, get_associated_token_address

from checkout_payments.core.errors import AccountNotFound, InvalidAmount, TransactionBuildFailed
from checkout_payments.core.transactions import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    MEMO_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    TransactionBuilder,
)


@pytest.fixture
def builder(ledger) -> TransactionBuilder:
    return TransactionBuilder(ledger, network="devnet")


def _recipient_account(builder, recipient: str) -> Pubkey:
    return get_associated_token_address(Pubkey.from_string(recipient), builder.mint("USDC"))


def test_token_account_is_the_associated_account(builder, merchant_wallet):
    owner = Pubkey.from_string(merchant_wallet)
    assert builder.token_account(merchant_wallet, "USDC") == _recipient_account(builder, merchant_wallet)
    assert builder.token_account(owner, "USDC") != builder.token_account(Keypair().pubkey(), "USDC")


def test_missing_recipient_account_adds_creation_first(builder, payer, merchant_wallet):
    built = builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="10.00")

    assert built.creates_recipient_account
    assert built.program_ids == [ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID]
    create_ix = built.instructions[0]
    assert create_ix.accounts[0].pubkey == payer.pubkey()
    assert create_ix.accounts[1].pubkey == _recipient_account(builder, merchant_wallet)


def test_existing_recipient_account_is_not_recreated(builder, ledger, payer, merchant_wallet):
    ledger.accounts.add(str(_recipient_account(builder, merchant_wallet)))
    built = builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="10.00")

    assert not built.creates_recipient_account
    assert ASSOCIATED_TOKEN_PROGRAM_ID not in built.program_ids
    assert built.program_ids == [TOKEN_PROGRAM_ID]


def test_transfer_carries_atomic_amount(builder, payer, merchant_wallet):
    built = builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="29.99")
    params = decode_transfer_checked(built.instructions[-1])
    assert params.amount == 29_990_000
    assert params.decimals == 6
    assert params.mint == builder.mint("USDC")
    assert params.owner == payer.pubkey()
    assert params.source == builder.token_account(payer.pubkey(), "USDC")
    assert params.dest == _recipient_account(builder, merchant_wallet)
    assert built.amount_atomic == 29_990_000


def test_memo_comes_last(builder, payer, merchant_wallet):
    built = builder.build(
        payer=payer.pubkey(), recipient=merchant_wallet, amount="1", memo="order-42"
    )
    assert built.program_ids[-1] == MEMO_PROGRAM_ID
    assert bytes(built.instructions[-1].data) == b"order-42"
    assert built.memo == "order-42"


def test_every_build_fetches_a_fresh_blockhash(builder, ledger, payer, merchant_wallet):
    first = builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="1")
    second = builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="1")
    assert len(ledger.blockhashes) == 2
    assert first.blockhash != second.blockhash


def test_fee_payer_defaults_to_payer(builder, payer, merchant_wallet):
    built = builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="1")
    assert built.fee_payer == payer.pubkey()
    assert not built.sponsored


def test_account_creation_funded_by_fee_payer(builder, payer, merchant_wallet):
    relay = Keypair().pubkey()
    built = builder.build(
        payer=payer.pubkey(), recipient=merchant_wallet, amount="1", fee_payer=relay
    )
    assert built.sponsored
    assert built.instructions[0].accounts[0].pubkey == relay
    assert built.transaction.message.account_keys[0] == relay


def test_missing_account_without_creation_raises(builder, payer, merchant_wallet):
    with pytest.raises(AccountNotFound):
        builder.build(
            payer=payer.pubkey(),
            recipient=merchant_wallet,
            amount="1",
            create_recipient_account=False,
        )


def test_zero_amount_rejected_before_ledger_calls(builder, ledger, payer, merchant_wallet):
    with pytest.raises(InvalidAmount):
        builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="0")
    assert ledger.blockhashes == []


def test_blockhash_failure_is_a_build_failure(builder, ledger, payer, merchant_wallet):
    ledger.fail_blockhash = 1
    with pytest.raises(TransactionBuildFailed):
        builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="1")


def test_sign_and_serialize(builder, payer, merchant_wallet):
    built = builder.build(payer=payer.pubkey(), recipient=merchant_wallet, amount="1")
    built.sign(payer)
    assert built.signed_by == [str(payer.pubkey())]
    assert built.transaction.is_signed()
    assert built.serialize()
