# src/magicplace/crypto/keys.py
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Union

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from magicplace.errors import InvalidSignatureLength, WalletUnavailable

SIGNATURE_LEN = 64
DEFAULT_SALT = "default"

SignatureLike = Union[bytes, bytearray, Signature]


def signature_bytes(sig: SignatureLike) -> bytes:
    """Normalize a wallet signature (solders Signature or raw bytes) to bytes."""
    return bytes(sig)


def derive_session_keypair(sig: SignatureLike) -> Keypair:
    """Deterministically derive the session keypair from a wallet signature.

    seed = sha256(signature); the seed is expanded with standard Ed25519
    key generation. Same signature -> same keypair, no I/O.
    """
    raw = signature_bytes(sig)
    if len(raw) != SIGNATURE_LEN:
        raise InvalidSignatureLength(expected=SIGNATURE_LEN, got=len(raw))
    seed = hashlib.sha256(raw).digest()
    return Keypair.from_seed(seed)


def derivation_message(wallet: Pubkey, *, salt: str = DEFAULT_SALT) -> bytes:
    msg = f"Create session key for Magicplace\nWallet: {wallet}"
    if salt and salt != DEFAULT_SALT:
        msg += f"\nSalt: {salt}"
    return msg.encode("utf-8")


def authorization_message(session: Pubkey, wallet: Pubkey) -> bytes:
    # Must match the bytes the on-chain program rebuilds for the Ed25519 check.
    return f"Authorize session key: {session} for wallet: {wallet} on Magicplace".encode("utf-8")


def load_keypair_file(path: str) -> Keypair:
    """Load a Solana CLI keypair file (JSON array of 64 byte values)."""
    p = Path(path).expanduser()
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
        return Keypair.from_bytes(bytes(raw))
    except FileNotFoundError as e:
        raise WalletUnavailable(f"Wallet keypair file not found: {p}") from e
    except (ValueError, TypeError) as e:
        raise WalletUnavailable(f"Wallet keypair file is not a valid keypair: {p}") from e
