from __future__ import annotations

import json
from pathlib import Path

import pytest

import magicplace.session.credential as credential_mod
import magicplace.session.store as store_mod
from magicplace.crypto.keys import derivation_message, derive_session_keypair
from magicplace.errors import SessionExpired, SessionUnavailable
from magicplace.session.credential import SessionCredential
from magicplace.session.store import MemorySessionBackend, SessionStore, SqliteSessionBackend
from magicplace.testing.ledger import deterministic_keypair

NOW = 1_700_000_000.0


def _credential(label: str = "wallet", *, expires_at: int | None = int(NOW) + 3600) -> SessionCredential:
    wallet = deterministic_keypair(label)
    sig = bytes(wallet.sign_message(derivation_message(wallet.pubkey())))
    auth = bytes(wallet.sign_message(b"auth"))
    return SessionCredential(
        keypair=derive_session_keypair(sig),
        derivation_signature=sig,
        created_at=int(NOW),
        expires_at=expires_at,
        auth_signature=auth,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> SessionStore:
    if request.param == "memory":
        return SessionStore(MemorySessionBackend())
    return SessionStore(SqliteSessionBackend.at_path(str(tmp_path / "sessions.db")))


@pytest.fixture(autouse=True)
def _clock(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(store_mod.time, "time", lambda: NOW)


def test_persist_then_restore_rederives_same_key(store: SessionStore) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    cred = _credential()
    store.persist(owner, "default", cred)

    restored = SessionStore(store.backend).restore(owner, "default")
    assert restored is not None
    assert restored.active is True
    assert restored.pubkey() == cred.pubkey()
    assert restored.auth_signature == cred.auth_signature
    assert restored.expires_at == cred.expires_at


def test_record_layout_is_signatures_not_keys(store: SessionStore) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    cred = _credential()
    store.persist(owner, "default", cred)

    raw = json.loads(store.backend.get(str(owner), "default") or "{}")
    assert set(raw) == {
        "derivationSignature",
        "authSignature",
        "createdAt",
        "expiresAt",
        "ownerIdentity",
        "sessionPublicKey",
    }
    assert raw["sessionPublicKey"] == str(cred.pubkey())
    assert bytes(cred.keypair).hex() not in json.dumps(raw)  # type: ignore[arg-type]


def test_salt_namespaces_records(store: SessionStore) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    store.persist(owner, "default", _credential())
    assert store.restore(owner, "other") is None


def test_restore_rejects_owner_mismatch_without_deleting(store: SessionStore) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    other = deterministic_keypair("someone-else").pubkey()
    store.persist(owner, "default", _credential())

    # Same key slot, different wallet on record.
    raw = store.backend.get(str(owner), "default")
    assert raw is not None
    store.backend.put(str(other), "default", raw)

    assert store.restore(other, "default") is None
    assert store.backend.get(str(other), "default") is not None


def test_restore_rejects_and_deletes_expired(store: SessionStore, monkeypatch: pytest.MonkeyPatch) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    store.persist(owner, "default", _credential(expires_at=int(NOW) + 10))

    monkeypatch.setattr(store_mod.time, "time", lambda: NOW + 11)
    assert store.restore(owner, "default") is None
    assert store.backend.get(str(owner), "default") is None


def test_never_expiring_record_restores(store: SessionStore, monkeypatch: pytest.MonkeyPatch) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    store.persist(owner, "default", _credential(expires_at=None))
    monkeypatch.setattr(store_mod.time, "time", lambda: NOW + 10 * 365 * 86400)
    restored = store.restore(owner, "default")
    assert restored is not None and restored.expires_at is None


def test_restore_rejects_tampered_public_key(store: SessionStore) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    store.persist(owner, "default", _credential())
    raw = json.loads(store.backend.get(str(owner), "default") or "{}")
    raw["sessionPublicKey"] = str(deterministic_keypair("forged").pubkey())
    store.backend.put(str(owner), "default", json.dumps(raw))

    assert store.restore(owner, "default") is None


def test_restore_rejects_malformed_record(store: SessionStore) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    store.backend.put(str(owner), "default", json.dumps({"derivationSignature": "zz"}))
    assert store.restore(owner, "default") is None


def test_revoke_deletes_and_clears_credential(store: SessionStore) -> None:
    owner = deterministic_keypair("wallet").pubkey()
    cred = _credential()
    store.persist(owner, "default", cred)

    store.revoke(owner, "default")
    assert store.current is None
    assert store.backend.get(str(owner), "default") is None
    assert cred.keypair is None and cred.active is False
    with pytest.raises(SessionUnavailable):
        cred.sign_message(b"x")


def test_expired_credential_refuses_to_sign(monkeypatch: pytest.MonkeyPatch) -> None:
    cred = _credential(expires_at=int(NOW) + 5)
    monkeypatch.setattr(credential_mod.time, "time", lambda: NOW + 1)
    assert cred.sign_message(b"ok") is not None

    monkeypatch.setattr(credential_mod.time, "time", lambda: NOW + 6)
    with pytest.raises(SessionExpired):
        cred.sign_message(b"late")
    assert cred.active is False
