# src/magicplace/session/protocol.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from solders.pubkey import Pubkey
from solders.signature import Signature

from magicplace.config import ClientConfig
from magicplace.crypto.keys import (
    SignatureLike,
    authorization_message,
    derivation_message,
    derive_session_keypair,
    signature_bytes,
)
from magicplace.crypto.sig import verify_ed25519_signature
from magicplace.errors import (
    InvalidAmount,
    LedgerRpcError,
    MagicplaceError,
    SessionUnavailable,
    SignatureDeclined,
    TransactionReverted,
    WalletUnavailable,
)
from magicplace.ledger.addresses import session_address
from magicplace.ledger.gateway import LedgerGateway
from magicplace.ledger.instructions import (
    ProgramInstructions,
    ed25519_verify_instruction,
    priority_fee_instruction,
    transfer_instruction,
)
from magicplace.ledger.residency import DelegationStatus, resolve_residency
from magicplace.session.credential import SessionCredential
from magicplace.session.store import SessionStore
from magicplace.structured_logging import log_event
from magicplace.tx.orchestrator import Signer, TransactionOrchestrator

log = logging.getLogger("magicplace.session")


class SessionState(str, Enum):
    IDLE = "idle"
    DERIVING = "deriving"
    AUTHORIZING = "authorizing"
    CREATING_ACCOUNT = "creating-account"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class SetupPlan:
    needs_authorization: bool
    needs_funding: bool
    needs_initialize: bool
    needs_delegate: bool

    @property
    def already_set_up(self) -> bool:
        return not (self.needs_authorization or self.needs_funding or self.needs_initialize or self.needs_delegate)


def plan_session_setup(balance: int, residency: DelegationStatus, min_balance: int) -> SetupPlan:
    """Single decision point for the session setup.

    A session that is already funded and delegated skips everything,
    including the second wallet prompt.
    """
    funded = int(balance) >= int(min_balance)
    delegated = residency == DelegationStatus.DELEGATED
    if funded and delegated:
        return SetupPlan(False, False, False, False)
    return SetupPlan(
        needs_authorization=True,
        needs_funding=not funded,
        needs_initialize=residency == DelegationStatus.NOT_INITIALIZED,
        needs_delegate=not delegated,
    )


def is_account_already_exists(err: Any) -> bool:
    """True for the "account already in use" outcome of account creation."""
    if "already in use" in str(err):
        return True
    detail = getattr(err, "detail", err)
    if isinstance(detail, dict):
        ie = detail.get("InstructionError")
        if isinstance(ie, (list, tuple)) and len(ie) == 2 and ie[1] == {"Custom": 0}:
            return True
    return False


class WalletSigner:
    """Wallet as a transaction signer; a refused prompt becomes SignatureDeclined."""

    def __init__(self, wallet: Signer) -> None:
        self._wallet = wallet

    def pubkey(self) -> Pubkey:
        return self._wallet.pubkey()

    def sign_message(self, message: bytes) -> Signature:
        try:
            return self._wallet.sign_message(message)
        except MagicplaceError:
            raise
        except Exception as e:
            raise SignatureDeclined(str(e) or "Signature request was declined") from e


class SessionKeyProtocol:
    """Two-signature session key setup as an explicit state machine.

    IDLE -> DERIVING -> (AUTHORIZING) -> CREATING_ACCOUNT -> COMPLETE,
    with ERROR absorbing on any failure. Nothing is persisted before COMPLETE.
    """

    def __init__(
        self,
        *,
        wallet: Optional[Signer],
        store: SessionStore,
        base: LedgerGateway,
        fast: LedgerGateway,
        orchestrator: TransactionOrchestrator,
        config: ClientConfig,
        on_state: Optional[Callable[[SessionState], None]] = None,
    ) -> None:
        self.wallet = wallet
        self.store = store
        self.base = base
        self.fast = fast
        self.orchestrator = orchestrator
        self.config = config
        self.on_state = on_state
        self.instructions = ProgramInstructions(
            program_id=config.program_pubkey,
            delegation_program_id=config.delegation_program_pubkey,
            magic_program_id=Pubkey.from_string(config.magic_program_id),
            magic_context_id=Pubkey.from_string(config.magic_context_id),
        )
        self.state = SessionState.IDLE
        self.history: List[SessionState] = [SessionState.IDLE]
        self.plan: Optional[SetupPlan] = None
        self.error: Optional[MagicplaceError] = None

    def _enter(self, state: SessionState) -> None:
        self.state = state
        self.history.append(state)
        log_event(log, "session_state", state=state.value)
        if self.on_state is not None:
            self.on_state(state)

    def _wallet(self) -> WalletSigner:
        w = self.wallet
        if w is None or not callable(getattr(w, "sign_message", None)) or not callable(getattr(w, "pubkey", None)):
            raise WalletUnavailable()
        return WalletSigner(w)

    def _request_signature(self, wallet: WalletSigner, message: bytes) -> bytes:
        sig: SignatureLike = wallet.sign_message(message)
        return signature_bytes(sig)

    def ensure(self, salt: Optional[str] = None) -> SessionCredential:
        """Reuse a stored, unexpired session for this wallet, else run setup."""
        salt = salt or self.config.session_salt
        wallet = self._wallet()
        restored = self.store.restore(wallet.pubkey(), salt)
        if restored is not None and restored.active:
            self._enter(SessionState.COMPLETE)
            return restored
        return self.run(salt)

    def run(self, salt: Optional[str] = None) -> SessionCredential:
        try:
            return self._run(salt or self.config.session_salt)
        except MagicplaceError as e:
            self.error = e
            self._enter(SessionState.ERROR)
            log_event(log, "session_setup_failed", level=logging.WARNING, code=e.code, error=e.message)
            raise
        except Exception as e:
            self._enter(SessionState.ERROR)
            log_event(log, "session_setup_failed", level=logging.ERROR, code="unexpected", error=repr(e))
            raise

    def fund_session(self, lamports: int) -> str:
        """Top up the current session key from the wallet (wallet signs the transfer)."""
        lamports = int(lamports)
        if lamports <= 0:
            raise InvalidAmount(lamports)
        cred = self.store.current
        if cred is None or cred.keypair is None:
            raise SessionUnavailable()
        wallet = self._wallet()
        sig = self.orchestrator.submit(
            [transfer_instruction(from_pubkey=wallet.pubkey(), to_pubkey=cred.pubkey(), lamports=lamports)],
            wallet,
        )
        log_event(log, "session_topped_up", session=str(cred.pubkey()), lamports=lamports, signature=sig)
        return sig

    def _run(self, salt: str) -> SessionCredential:
        if self.state not in (SessionState.IDLE, SessionState.COMPLETE):
            raise RuntimeError(f"session protocol cannot start from state {self.state.value}")
        cfg = self.config

        self._enter(SessionState.DERIVING)
        wallet = self._wallet()
        owner = wallet.pubkey()
        derivation_sig = self._request_signature(wallet, derivation_message(owner, salt=salt))
        keypair = derive_session_keypair(derivation_sig)
        session_pk = keypair.pubkey()

        balance = self.base.get_balance(session_pk)
        residency, _acct = resolve_residency(
            session_address(cfg.program_pubkey, session_pk),
            fast=self.fast,
            base=self.base,
            program_id=cfg.program_pubkey,
            delegation_program_id=cfg.delegation_program_pubkey,
        )
        plan = plan_session_setup(balance, residency, cfg.min_session_balance_lamports)
        self.plan = plan
        log_event(
            log,
            "session_setup_plan",
            session=str(session_pk),
            balance=balance,
            residency=residency.value,
            needs_authorization=plan.needs_authorization,
            needs_funding=plan.needs_funding,
            needs_initialize=plan.needs_initialize,
            needs_delegate=plan.needs_delegate,
        )

        auth_sig: Optional[bytes] = None
        if plan.needs_authorization:
            self._enter(SessionState.AUTHORIZING)
            auth_msg = authorization_message(session_pk, owner)
            auth_sig = self._request_signature(wallet, auth_msg)
            if not verify_ed25519_signature(message=auth_msg, sig=auth_sig, pubkey=owner):
                raise SignatureDeclined("Wallet returned a signature that does not verify for the authorization message")

        now = int(time.time())
        credential = SessionCredential(
            keypair=keypair,
            derivation_signature=derivation_sig,
            created_at=now,
            expires_at=(now + cfg.session_duration_s) if cfg.session_duration_s > 0 else None,
            auth_signature=auth_sig,
        )

        if not plan.already_set_up:
            self._enter(SessionState.CREATING_ACCOUNT)
            self._create_account(wallet, owner, credential, plan, auth_sig)

        self.store.persist(owner, salt, credential)
        self._enter(SessionState.COMPLETE)
        return credential

    def _create_account(
        self,
        wallet: Signer,
        owner: Pubkey,
        credential: SessionCredential,
        plan: SetupPlan,
        auth_sig: Optional[bytes],
    ) -> None:
        cfg = self.config
        session_pk = credential.pubkey()
        fee_ix = priority_fee_instruction(cfg.priority_fee_micro_lamports)

        if plan.needs_funding:
            self.orchestrator.submit(
                [transfer_instruction(from_pubkey=owner, to_pubkey=session_pk, lamports=cfg.session_funding_lamports)],
                wallet,
            )
            log_event(log, "session_funded", session=str(session_pk), lamports=cfg.session_funding_lamports)

        if plan.needs_initialize:
            if auth_sig is None:
                raise SignatureDeclined("Authorization signature is required to create the session account")
            auth_msg = authorization_message(session_pk, owner)
            ixs = [
                ed25519_verify_instruction(pubkey=owner, message=auth_msg, signature=auth_sig),
                self.instructions.initialize_user(session=session_pk, main_wallet=owner, auth_signature=auth_sig),
                fee_ix,
            ]
            try:
                self.orchestrator.submit(ixs, credential)
            except (TransactionReverted, LedgerRpcError) as e:
                if not is_account_already_exists(e):
                    raise
                log_event(log, "session_account_exists", session=str(session_pk))

        if plan.needs_delegate:
            self.orchestrator.submit(
                [fee_ix, self.instructions.delegate_user(session=session_pk, main_wallet=owner)],
                credential,
                skip_preflight=True,
            )
            log_event(log, "session_delegated", session=str(session_pk))
