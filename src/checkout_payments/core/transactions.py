"""
Construction of unsigned SPL token transfer transactions.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.memo.constants import MEMO_PROGRAM_ID
from spl.memo.instructions import MemoParams, create_memo
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from .addresses import AddressLike, parse_address
from .errors import AccountNotFound, LedgerError, TransactionBuildFailed
from .ledger import LedgerClient
from .tokens import AmountCodec, AmountLike, TokenRegistry

__all__ = [
    "ASSOCIATED_TOKEN_PROGRAM_ID",
    "BuiltTransaction",
    "MEMO_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "TransactionBuilder",
]

logger = logging.getLogger(__name__)

@dataclass
class BuiltTransaction:
    """An unsigned transaction plus what went into it."""

    transaction: Transaction
    instructions: List[Instruction]
    blockhash: Hash
    last_valid_block_height: int
    fee_payer: Pubkey
    payer: Pubkey
    recipient: Pubkey
    token: str
    amount_atomic: int
    creates_recipient_account: bool
    fee_atomic: int = 0
    memo: Optional[str] = None
    signed_by: List[str] = field(default_factory=list)

    @property
    def program_ids(self) -> List[Pubkey]:
        return [ix.program_id for ix in self.instructions]

    @property
    def sponsored(self) -> bool:
        """True when someone other than the payer covers network fees."""
        return self.fee_payer != self.payer

    def sign(self, *keypairs: Keypair) -> "BuiltTransaction":
        """
        Add signatures from ``keypairs``.

        Partial signing is allowed so the relay can add the fee payer
        signature afterwards.
        """
        self.transaction.partial_sign(list(keypairs), self.blockhash)
        self.signed_by.extend(str(kp.pubkey()) for kp in keypairs)
        return self

    def to_bytes(self) -> bytes:
        return bytes(self.transaction)

    def serialize(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")


class TransactionBuilder:
    """
    Builds the customer → merchant token transfer.

    Every call fetches a fresh blockhash, so a rebuild after a failure never
    reuses a stale checkpoint.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        network: str = "devnet",
        registry: Optional[TokenRegistry] = None,
        codec: Optional[AmountCodec] = None,
    ) -> None:
        self.ledger = ledger
        self.network = network
        self.registry = registry or TokenRegistry()
        self.codec = codec or AmountCodec(self.registry)

    def mint(self, token: str) -> Pubkey:
        return Pubkey.from_string(self.registry.mint(token, self.network))

    def token_account(self, owner: AddressLike, token: str) -> Pubkey:
        return get_associated_token_address(parse_address(owner, "owner"), self.mint(token))

    def transfer_instruction(
        self,
        owner: Pubkey,
        destination: Pubkey,
        token: str,
        amount_atomic: int,
    ) -> Instruction:
        """Checked transfer from the token account of ``owner`` into ``destination``."""
        mint = self.mint(token)
        return transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=get_associated_token_address(owner, mint),
                mint=mint,
                dest=destination,
                owner=owner,
                amount=amount_atomic,
                decimals=self.registry.decimals(token),
            )
        )

    def recipient_account_exists(self, recipient: Pubkey, token: str) -> bool:
        account = get_associated_token_address(recipient, self.mint(token))
        try:
            return self.ledger.account_exists(account)
        except LedgerError as exc:
            raise TransactionBuildFailed(
                f"Could not look up recipient token account {account}: {exc.message}"
            ) from exc

    def build(
        self,
        *,
        payer: AddressLike,
        recipient: AddressLike,
        amount: AmountLike,
        token: str = "USDC",
        memo: Optional[str] = None,
        fee_payer: Optional[AddressLike] = None,
        leading_instructions: Sequence[Instruction] = (),
        create_recipient_account: bool = True,
        fee_atomic: int = 0,
    ) -> BuiltTransaction:
        """
        Assemble the transfer.

        Instruction order: ``leading_instructions``, recipient account creation
        when it does not exist yet, the transfer, then the optional memo. The
        account is funded by ``fee_payer`` when one is given, otherwise by the
        payer. With ``create_recipient_account=False`` a missing account raises
        :class:`AccountNotFound` instead.
        """
        payer_key = parse_address(payer, "payer")
        recipient_key = parse_address(recipient, "recipient")
        fee_payer_key = parse_address(fee_payer, "fee_payer") if fee_payer is not None else payer_key

        amount_atomic = self.codec.encode_atomic(amount, token)
        mint = self.mint(token)
        recipient_account = get_associated_token_address(recipient_key, mint)

        instructions: List[Instruction] = list(leading_instructions)
        needs_account = not self.recipient_account_exists(recipient_key, token)
        if needs_account:
            if not create_recipient_account:
                raise AccountNotFound(
                    f"Recipient token account {recipient_account} does not exist",
                    {"recipient": str(recipient_key), "token": token},
                )
            logger.info("Recipient %s has no %s account; adding creation step", recipient_key, token)
            instructions.append(
                create_associated_token_account(payer=fee_payer_key, owner=recipient_key, mint=mint)
            )

        instructions.append(self.transfer_instruction(payer_key, recipient_account, token, amount_atomic))
        if memo:
            instructions.append(
                create_memo(MemoParams(program_id=MEMO_PROGRAM_ID, signer=payer_key, message=memo.encode("utf-8")))
            )

        try:
            latest = self.ledger.get_latest_blockhash()
        except LedgerError as exc:
            raise TransactionBuildFailed(f"Could not fetch a recent blockhash: {exc.message}") from exc

        try:
            message = Message.new_with_blockhash(instructions, fee_payer_key, latest.value)
            transaction = Transaction.new_unsigned(message)
        except (ValueError, TypeError) as exc:
            raise TransactionBuildFailed(f"Could not assemble transaction: {exc}") from exc

        return BuiltTransaction(
            transaction=transaction,
            instructions=instructions,
            blockhash=latest.value,
            last_valid_block_height=latest.last_valid_block_height,
            fee_payer=fee_payer_key,
            payer=payer_key,
            recipient=recipient_key,
            token=token.upper(),
            amount_atomic=amount_atomic,
            creates_recipient_account=needs_account,
            fee_atomic=fee_atomic,
            memo=memo or None,
        )
