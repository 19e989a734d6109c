# src/magicplace/ledger/instructions.py
from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import List, Optional

from solders.compute_budget import set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.sysvar import INSTRUCTIONS as INSTRUCTIONS_SYSVAR

from magicplace.errors import InvalidPixel, InvalidSignatureLength
from magicplace.ledger.addresses import (
    delegation_buffer_address,
    delegation_metadata_address,
    delegation_record_address,
    session_address,
    shard_address,
    shard_for_pixel,
    validate_pixel_coordinate,
    validate_shard_coordinate,
)
from magicplace.ledger.constants import ED25519_PROGRAM_ID, MAX_COLOR, MIN_COLOR, SYSTEM_PROGRAM_ID

# Ed25519 precompile layout: 16-byte header, then pubkey, signature, message.
_ED25519_HEADER_LEN = 16
_ED25519_PUBKEY_OFFSET = _ED25519_HEADER_LEN
_ED25519_SIG_OFFSET = _ED25519_PUBKEY_OFFSET + 32
_ED25519_MSG_OFFSET = _ED25519_SIG_OFFSET + 64
_CURRENT_IX = 0xFFFF


def instruction_discriminator(name: str) -> bytes:
    """Anchor instruction discriminator: sha256("global:<snake_name>")[:8]."""
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


def ed25519_verify_instruction(*, pubkey: Pubkey, message: bytes, signature: bytes) -> Instruction:
    """Build an Ed25519 precompile instruction with everything inline.

    The program reads this back through the instructions sysvar at index 0.
    """
    sig = bytes(signature)
    if len(sig) != 64:
        raise InvalidSignatureLength(expected=64, got=len(sig))
    header = struct.pack(
        "<BBHHHHHHH",
        1,
        0,
        _ED25519_SIG_OFFSET,
        _CURRENT_IX,
        _ED25519_PUBKEY_OFFSET,
        _CURRENT_IX,
        _ED25519_MSG_OFFSET,
        len(message),
        _CURRENT_IX,
    )
    data = header + bytes(pubkey) + sig + bytes(message)
    return Instruction(ED25519_PROGRAM_ID, data, [])


def is_ed25519_instruction(ix: Instruction) -> bool:
    return ix.program_id == ED25519_PROGRAM_ID


def priority_fee_instruction(micro_lamports: int) -> Instruction:
    return set_compute_unit_price(int(micro_lamports))


def transfer_instruction(*, from_pubkey: Pubkey, to_pubkey: Pubkey, lamports: int) -> Instruction:
    return transfer(TransferParams(from_pubkey=from_pubkey, to_pubkey=to_pubkey, lamports=int(lamports)))


def _validate_color(color: int) -> int:
    color = int(color)
    if not (MIN_COLOR <= color <= MAX_COLOR):
        raise InvalidPixel(f"Invalid color: {color}. Must be {MIN_COLOR}-{MAX_COLOR}", {"color": color})
    return color


@dataclass(frozen=True)
class ProgramInstructions:
    """Instruction builders for the canvas program.

    Account orders follow the program's Accounts structs, including the
    accounts the delegation/commit macros append.
    """

    program_id: Pubkey
    delegation_program_id: Pubkey
    magic_program_id: Pubkey
    magic_context_id: Pubkey

    def _ix(self, name: str, args: bytes, accounts: List[AccountMeta]) -> Instruction:
        return Instruction(self.program_id, instruction_discriminator(name) + args, accounts)

    def _delegation_accounts(self, pda: Pubkey) -> List[AccountMeta]:
        return [
            AccountMeta(delegation_buffer_address(self.program_id, pda), is_signer=False, is_writable=True),
            AccountMeta(delegation_record_address(self.delegation_program_id, pda), is_signer=False, is_writable=True),
            AccountMeta(delegation_metadata_address(self.delegation_program_id, pda), is_signer=False, is_writable=True),
            AccountMeta(pda, is_signer=False, is_writable=True),
            AccountMeta(self.program_id, is_signer=False, is_writable=False),
            AccountMeta(self.delegation_program_id, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ]

    def initialize_user(self, *, session: Pubkey, main_wallet: Pubkey, auth_signature: bytes) -> Instruction:
        sig = bytes(auth_signature)
        if len(sig) != 64:
            raise InvalidSignatureLength(expected=64, got=len(sig))
        return self._ix(
            "initialize_user",
            bytes(main_wallet) + sig,
            [
                AccountMeta(session_address(self.program_id, session), is_signer=False, is_writable=True),
                AccountMeta(session, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
                AccountMeta(INSTRUCTIONS_SYSVAR, is_signer=False, is_writable=False),
            ],
        )

    def delegate_user(self, *, session: Pubkey, main_wallet: Pubkey, validator: Optional[Pubkey] = None) -> Instruction:
        user = session_address(self.program_id, session)
        accounts = [
            AccountMeta(user, is_signer=False, is_writable=True),
            AccountMeta(session, is_signer=True, is_writable=True),
        ] + self._delegation_accounts(user)
        if validator is not None:
            accounts.append(AccountMeta(validator, is_signer=False, is_writable=False))
        return self._ix("delegate_user", bytes(main_wallet), accounts)

    def initialize_shard(self, *, x: int, y: int, session: Pubkey) -> Instruction:
        x, y = validate_shard_coordinate(x, y)
        return self._ix(
            "initialize_shard",
            struct.pack("<HH", x, y),
            [
                AccountMeta(shard_address(self.program_id, x, y), is_signer=False, is_writable=True),
                AccountMeta(session_address(self.program_id, session), is_signer=False, is_writable=False),
                AccountMeta(session, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )

    def delegate_shard(self, *, x: int, y: int, session: Pubkey, validator: Optional[Pubkey] = None) -> Instruction:
        x, y = validate_shard_coordinate(x, y)
        pda = shard_address(self.program_id, x, y)
        accounts = [AccountMeta(session, is_signer=True, is_writable=True)] + self._delegation_accounts(pda)
        if validator is not None:
            accounts.append(AccountMeta(validator, is_signer=False, is_writable=False))
        return self._ix("delegate_shard", struct.pack("<HH", x, y), accounts)

    def _pixel_accounts(self, x: int, y: int, signer: Pubkey) -> List[AccountMeta]:
        return [
            AccountMeta(shard_address(self.program_id, x, y), is_signer=False, is_writable=True),
            AccountMeta(session_address(self.program_id, signer), is_signer=False, is_writable=True),
            AccountMeta(signer, is_signer=True, is_writable=True),
        ]

    def place_pixel(self, *, px: int, py: int, color: int, signer: Pubkey) -> Instruction:
        px, py = validate_pixel_coordinate(px, py)
        color = _validate_color(color)
        x, y = shard_for_pixel(px, py)
        return self._ix("place_pixel", struct.pack("<HHIIB", x, y, px, py, color), self._pixel_accounts(x, y, signer))

    def erase_pixel(self, *, px: int, py: int, signer: Pubkey) -> Instruction:
        px, py = validate_pixel_coordinate(px, py)
        x, y = shard_for_pixel(px, py)
        return self._ix("erase_pixel", struct.pack("<HHII", x, y, px, py), self._pixel_accounts(x, y, signer))

    def commit_shard(self, *, x: int, y: int, payer: Pubkey) -> Instruction:
        x, y = validate_shard_coordinate(x, y)
        return self._ix(
            "commit_shard",
            struct.pack("<HH", x, y),
            [
                AccountMeta(payer, is_signer=True, is_writable=True),
                AccountMeta(shard_address(self.program_id, x, y), is_signer=False, is_writable=True),
                AccountMeta(self.magic_program_id, is_signer=False, is_writable=False),
                AccountMeta(self.magic_context_id, is_signer=False, is_writable=True),
            ],
        )
