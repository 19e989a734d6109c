# src/magicplace/session/store.py
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from solders.pubkey import Pubkey

from magicplace.crypto.keys import derive_session_keypair
from magicplace.session.credential import SessionCredential
from magicplace.storage.sqlite_db import SqliteDB, _canon_json, _now_ms
from magicplace.structured_logging import log_event

log = logging.getLogger("magicplace.session")


class SessionRecord(BaseModel):
    """Persisted shape of one session key (one per owner + salt).

    Only the signatures are stored; the keypair is re-derived on restore.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    derivation_signature: str = Field(alias="derivationSignature")
    auth_signature: Optional[str] = Field(default=None, alias="authSignature")
    created_at: int = Field(alias="createdAt")
    expires_at: Optional[int] = Field(default=None, alias="expiresAt")
    owner_identity: str = Field(alias="ownerIdentity")
    session_public_key: str = Field(alias="sessionPublicKey")

    @field_validator("derivation_signature", "auth_signature")
    @classmethod
    def _sig_hex(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if len(bytes.fromhex(v)) != 64:
            raise ValueError("signature must be 64 bytes (hex)")
        return v.lower()

    @field_validator("owner_identity", "session_public_key")
    @classmethod
    def _pubkey(cls, v: str) -> str:
        Pubkey.from_string(v)
        return v

    def to_json(self) -> str:
        return _canon_json(self.model_dump(by_alias=True))


class SessionBackend(Protocol):
    def get(self, owner: str, salt: str) -> Optional[str]: ...

    def put(self, owner: str, salt: str, record_json: str) -> None: ...

    def delete(self, owner: str, salt: str) -> None: ...


class MemorySessionBackend:
    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def get(self, owner: str, salt: str) -> Optional[str]:
        with self._lock:
            return self._rows.get((owner, salt))

    def put(self, owner: str, salt: str, record_json: str) -> None:
        with self._lock:
            self._rows[(owner, salt)] = record_json

    def delete(self, owner: str, salt: str) -> None:
        with self._lock:
            self._rows.pop((owner, salt), None)


class SqliteSessionBackend:
    def __init__(self, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    @classmethod
    def at_path(cls, path: str) -> "SqliteSessionBackend":
        return cls(SqliteDB(path=path))

    def get(self, owner: str, salt: str) -> Optional[str]:
        with self._db.connection() as con:
            row = con.execute(
                "SELECT record_json FROM session_keys WHERE owner=? AND salt=? LIMIT 1;",
                (owner, salt),
            ).fetchone()
        return None if row is None else str(row["record_json"])

    def put(self, owner: str, salt: str, record_json: str) -> None:
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO session_keys(owner, salt, record_json, updated_ts_ms)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(owner, salt) DO UPDATE SET
                  record_json=excluded.record_json,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (owner, salt, record_json, _now_ms()),
            )

    def delete(self, owner: str, salt: str) -> None:
        with self._db.write_tx() as con:
            con.execute("DELETE FROM session_keys WHERE owner=? AND salt=?;", (owner, salt))


class SessionStore:
    """Persist / restore / revoke session credentials keyed by (owner, salt).

    Also tracks the in-memory current credential that signers pick up.
    """

    def __init__(self, backend: SessionBackend) -> None:
        self.backend = backend
        self.current: Optional[SessionCredential] = None

    def persist(self, owner: Pubkey, salt: str, credential: SessionCredential) -> None:
        if credential.keypair is None or credential.derivation_signature is None or credential.created_at is None:
            raise ValueError("cannot persist a cleared session credential")
        rec = SessionRecord(
            derivation_signature=credential.derivation_signature.hex(),
            auth_signature=None if credential.auth_signature is None else credential.auth_signature.hex(),
            created_at=int(credential.created_at),
            expires_at=credential.expires_at,
            owner_identity=str(owner),
            session_public_key=str(credential.keypair.pubkey()),
        )
        self.backend.put(str(owner), str(salt), rec.to_json())
        self.current = credential
        log_event(log, "session_persisted", owner=str(owner), salt=str(salt), session=rec.session_public_key)

    def restore(self, owner: Pubkey, salt: str) -> Optional[SessionCredential]:
        owner_s = str(owner)
        raw = self.backend.get(owner_s, str(salt))
        if raw is None:
            return None

        try:
            rec = SessionRecord.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            log_event(log, "session_record_invalid", level=logging.WARNING, owner=owner_s, salt=str(salt), error=str(e))
            return None

        if rec.owner_identity != owner_s:
            log_event(log, "session_owner_mismatch", level=logging.WARNING, owner=owner_s, stored=rec.owner_identity)
            return None

        if rec.expires_at is not None and time.time() >= rec.expires_at:
            self.backend.delete(owner_s, str(salt))
            log_event(log, "session_expired_deleted", owner=owner_s, salt=str(salt))
            return None

        sig = bytes.fromhex(rec.derivation_signature)
        keypair = derive_session_keypair(sig)
        if str(keypair.pubkey()) != rec.session_public_key:
            log_event(
                log,
                "session_record_corrupt",
                level=logging.WARNING,
                owner=owner_s,
                stored=rec.session_public_key,
                derived=str(keypair.pubkey()),
            )
            return None

        cred = SessionCredential(
            keypair=keypair,
            derivation_signature=sig,
            created_at=rec.created_at,
            expires_at=rec.expires_at,
            auth_signature=None if rec.auth_signature is None else bytes.fromhex(rec.auth_signature),
        )
        self.current = cred
        log_event(log, "session_restored", owner=owner_s, salt=str(salt), session=rec.session_public_key)
        return cred

    def revoke(self, owner: Pubkey, salt: str) -> None:
        self.backend.delete(str(owner), str(salt))
        if self.current is not None:
            self.current.clear()
        self.current = None
        log_event(log, "session_revoked", owner=str(owner), salt=str(salt))
