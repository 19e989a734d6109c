# src/magicplace/tx/orchestrator.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message, MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction

from magicplace.errors import ConfigError, InstructionOrderError, TransactionReverted
from magicplace.ledger.gateway import LedgerGateway
from magicplace.ledger.instructions import is_ed25519_instruction
from magicplace.structured_logging import log_event

log = logging.getLogger("magicplace.tx")


class Signer(Protocol):
    """Anything that can pay for and sign a transaction (Keypair, session credential, wallet)."""

    def pubkey(self) -> Pubkey: ...

    def sign_message(self, message: bytes) -> Signature: ...


class TransactionBuilder(Protocol):
    format: str

    def build(self, instructions: Sequence[Instruction], signer: Signer, blockhash: Hash) -> bytes: ...


class LegacyTransactionBuilder:
    format = "legacy"

    def build(self, instructions: Sequence[Instruction], signer: Signer, blockhash: Hash) -> bytes:
        msg = Message.new_with_blockhash(list(instructions), signer.pubkey(), blockhash)
        sig = signer.sign_message(bytes(msg))
        return bytes(Transaction.populate(msg, [sig]))


class VersionedTransactionBuilder:
    format = "versioned"

    def build(self, instructions: Sequence[Instruction], signer: Signer, blockhash: Hash) -> bytes:
        msg = MessageV0.try_compile(signer.pubkey(), list(instructions), [], blockhash)
        sig = signer.sign_message(to_bytes_versioned(msg))
        return bytes(VersionedTransaction.populate(msg, [sig]))


def make_transaction_builder(fmt: str) -> TransactionBuilder:
    fmt = str(fmt or "").strip().lower()
    if fmt == "legacy":
        return LegacyTransactionBuilder()
    if fmt == "versioned":
        return VersionedTransactionBuilder()
    raise ConfigError(f"unknown transaction format: {fmt!r}")


def check_instruction_order(instructions: Sequence[Instruction]) -> bool:
    """Validate ordering and report whether preflight must be skipped.

    A signature-verification instruction is only readable by the program
    that consumes it at index 0. Returns True if any is present.
    """
    if not instructions:
        raise InstructionOrderError("transaction has no instructions")
    has_verify = False
    for idx, ix in enumerate(instructions):
        if is_ed25519_instruction(ix):
            has_verify = True
            if idx != 0:
                raise InstructionOrderError(
                    f"signature-verification instruction must be at index 0, found at index {idx}"
                )
    return has_verify


@dataclass(frozen=True)
class PendingOperation:
    """A submitted transaction awaiting confirmation. Never persisted."""

    signature: str
    blockhash: Hash
    last_valid_block_height: int


class TransactionOrchestrator:
    """Blockhash -> sign -> send -> confirm against one ledger."""

    def __init__(self, gateway: LedgerGateway, builder: TransactionBuilder) -> None:
        self.gateway = gateway
        self.builder = builder

    def submit(self, instructions: Sequence[Instruction], signer: Signer, *, skip_preflight: bool = False) -> str:
        if check_instruction_order(instructions):
            skip_preflight = True

        bh = self.gateway.get_latest_blockhash()
        raw = self.builder.build(instructions, signer, bh.blockhash)
        signature = self.gateway.send_raw_transaction(raw, skip_preflight=skip_preflight)
        log_event(
            log,
            "tx_sent",
            ledger=self.gateway.name,
            signature=signature,
            format=self.builder.format,
            instructions=len(instructions),
            skip_preflight=skip_preflight,
        )

        return self.await_confirmation(PendingOperation(signature, bh.blockhash, bh.last_valid_block_height))

    def await_confirmation(self, pending: PendingOperation) -> str:
        result = self.gateway.confirm_transaction(pending.signature, pending.blockhash, pending.last_valid_block_height)
        if not result.ok:
            log_event(
                log,
                "tx_reverted",
                level=logging.WARNING,
                ledger=self.gateway.name,
                signature=pending.signature,
                err=str(result.err),
            )
            raise TransactionReverted(result.err, signature=pending.signature)

        log_event(log, "tx_confirmed", ledger=self.gateway.name, signature=pending.signature)
        return pending.signature
