# src/magicplace/session/credential.py
from __future__ import annotations

import time
from typing import Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from magicplace.errors import SessionExpired, SessionUnavailable


class SessionCredential:
    """The derived session keypair plus its lifecycle flags.

    Acts as a transaction signer. Mutated only by expiry checks and clear().
    """

    def __init__(
        self,
        *,
        keypair: Keypair,
        derivation_signature: bytes,
        created_at: int,
        expires_at: Optional[int] = None,
        auth_signature: Optional[bytes] = None,
        active: bool = True,
    ) -> None:
        self.keypair: Optional[Keypair] = keypair
        self.derivation_signature: Optional[bytes] = bytes(derivation_signature)
        self.created_at: Optional[int] = int(created_at)
        self.expires_at = None if expires_at is None else int(expires_at)
        self.auth_signature = None if auth_signature is None else bytes(auth_signature)
        self.active = bool(active)

    def __repr__(self) -> str:
        pk = str(self.keypair.pubkey()) if self.keypair is not None else None
        return f"SessionCredential(pubkey={pk!r}, active={self.active}, expires_at={self.expires_at})"

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        t = time.time() if now is None else float(now)
        return t >= self.expires_at

    def check_expiry(self, now: Optional[float] = None) -> bool:
        """Flip active -> False once expired. Returns the resulting active flag."""
        if self.active and self.is_expired(now):
            self.active = False
        return self.active

    def clear(self) -> None:
        self.keypair = None
        self.derivation_signature = None
        self.auth_signature = None
        self.created_at = None
        self.expires_at = None
        self.active = False

    def pubkey(self) -> Pubkey:
        if self.keypair is None:
            raise SessionUnavailable()
        return self.keypair.pubkey()

    def sign_message(self, message: bytes) -> Signature:
        if self.keypair is None:
            raise SessionUnavailable()
        if not self.check_expiry():
            if self.is_expired():
                raise SessionExpired()
            raise SessionUnavailable()
        return self.keypair.sign_message(message)
