# src/magicplace/crypto/sig.py
from __future__ import annotations

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from solders.pubkey import Pubkey


def verify_ed25519_signature(*, message: bytes, sig: bytes, pubkey: Pubkey | bytes) -> bool:
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes(pubkey))
        key.verify(bytes(sig), message)
        return True
    except (InvalidSignature, ValueError):
        return False
