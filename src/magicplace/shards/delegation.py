# src/magicplace/shards/delegation.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from solders.pubkey import Pubkey

from magicplace.config import ClientConfig
from magicplace.errors import (
    AccountNotCreated,
    InsufficientBalance,
    MagicplaceError,
    SessionUnavailable,
    ShardNotVisible,
    StuckDelegationState,
    TransientLedgerError,
)
from magicplace.ledger.accounts import AccountDecodeError, ShardAccountSnapshot, decode_pixel_shard
from magicplace.ledger.addresses import (
    delegation_metadata_address,
    delegation_record_address,
    shard_address,
    validate_shard_coordinate,
)
from magicplace.ledger.gateway import LedgerGateway
from magicplace.ledger.instructions import ProgramInstructions, priority_fee_instruction
from magicplace.ledger.residency import DelegationStatus, fetch_fast_layer_account, resolve_residency
from magicplace.session.credential import SessionCredential
from magicplace.session.store import SessionStore
from magicplace.structured_logging import log_event
from magicplace.tx.orchestrator import TransactionOrchestrator

log = logging.getLogger("magicplace.shards")

# Lower-cased markers of failures that clear up on their own.
RETRYABLE_MARKERS = (
    "invalidwritableaccount",
    "accountnotfound",
    "account not found",
    "blockhash",
    "timeout",
    "timed out",
    "failed to send",
)
STUCK_MARKER = "InvalidAccountOwner"


class ShardPhase(str, Enum):
    CHECKING = "Checking shard..."
    UNLOCKING = "Unlocking Shard..."
    SETTLING = "Waiting for confirmation..."
    DELEGATING = "Delegating shard..."
    AWAITING_FAST_LAYER = "Waiting for fast layer..."
    READY = "Shard ready"


class UnlockOutcome(str, Enum):
    ALREADY_DELEGATED = "already-delegated"
    DELEGATED = "delegated"


@dataclass(frozen=True)
class UnlockCost:
    status: DelegationStatus
    needs_init: bool
    needs_delegate: bool
    required_lamports: int


def required_balance(*, needs_init: bool, needs_delegate: bool, config: ClientConfig) -> int:
    init_cost = (config.shard_rent_lamports + config.tx_fee_lamports) if needs_init else 0
    delegate_cost = config.delegation_fee_lamports if needs_delegate else 0
    return init_cost + delegate_cost


def is_retryable_delegation_error(err: BaseException) -> bool:
    if isinstance(err, TransientLedgerError):
        return True
    text = str(err).lower()
    detail = getattr(err, "details", None)
    if detail is not None:
        text += " " + str(detail).lower()
    return any(m in text for m in RETRYABLE_MARKERS)


def _is_stuck_error(err: BaseException) -> bool:
    return STUCK_MARKER in str(err) or STUCK_MARKER in str(getattr(err, "details", "") or "")


StatusCallback = Callable[[ShardPhase], None]


class ShardDelegationStateMachine:
    """Residency checks and the initialize -> delegate unlock of one shard.

    Holds no per-shard state: unlocks of different coordinates may run in
    parallel threads sharing the read-only session credential.
    """

    def __init__(
        self,
        *,
        base: LedgerGateway,
        fast: LedgerGateway,
        orchestrator: TransactionOrchestrator,
        store: SessionStore,
        config: ClientConfig,
    ) -> None:
        self.base = base
        self.fast = fast
        self.orchestrator = orchestrator
        self.store = store
        self.config = config
        self.program_id = config.program_pubkey
        self.delegation_program_id = config.delegation_program_pubkey
        self.instructions = ProgramInstructions(
            program_id=self.program_id,
            delegation_program_id=self.delegation_program_id,
            magic_program_id=Pubkey.from_string(config.magic_program_id),
            magic_context_id=Pubkey.from_string(config.magic_context_id),
        )

    def _credential(self) -> SessionCredential:
        cred = self.store.current
        if cred is None or cred.keypair is None:
            raise SessionUnavailable()
        return cred

    def check_residency(self, x: int, y: int) -> DelegationStatus:
        x, y = validate_shard_coordinate(x, y)
        status, _acct = resolve_residency(
            shard_address(self.program_id, x, y),
            fast=self.fast,
            base=self.base,
            program_id=self.program_id,
            delegation_program_id=self.delegation_program_id,
        )
        return status

    def estimate_unlock_cost(self, x: int, y: int) -> UnlockCost:
        status = self.check_residency(x, y)
        needs_init = status == DelegationStatus.NOT_INITIALIZED
        needs_delegate = status != DelegationStatus.DELEGATED
        return UnlockCost(
            status=status,
            needs_init=needs_init,
            needs_delegate=needs_delegate,
            required_lamports=required_balance(needs_init=needs_init, needs_delegate=needs_delegate, config=self.config),
        )

    def fetch_shard(self, x: int, y: int) -> Optional[ShardAccountSnapshot]:
        """Read a shard, fast layer first. None if it exists on neither ledger."""
        x, y = validate_shard_coordinate(x, y)
        pda = shard_address(self.program_id, x, y)
        acct = fetch_fast_layer_account(self.fast, pda)
        residency = "fast"
        if acct is None or not acct.data:
            acct = self.base.get_account(pda)
            residency = "base"
        if acct is None:
            return None
        try:
            return decode_pixel_shard(acct.data, residency=residency)
        except AccountDecodeError as e:
            log_event(log, "shard_decode_failed", level=logging.WARNING, x=x, y=y, error=str(e))
            raise

    def ensure_delegated(self, x: int, y: int, status_callback: Optional[StatusCallback] = None) -> UnlockOutcome:
        x, y = validate_shard_coordinate(x, y)
        notify: StatusCallback = status_callback or (lambda _phase: None)
        cfg = self.config
        pda = shard_address(self.program_id, x, y)

        notify(ShardPhase.CHECKING)
        cost = self.estimate_unlock_cost(x, y)
        log_event(log, "shard_residency", x=x, y=y, status=cost.status.value, required_lamports=cost.required_lamports)
        if not cost.needs_delegate:
            return UnlockOutcome.ALREADY_DELEGATED

        credential = self._credential()
        session_pk = credential.pubkey()
        have = self.base.get_balance(session_pk)
        if have < cost.required_lamports:
            raise InsufficientBalance(required=cost.required_lamports, have=have)

        fee_ix = priority_fee_instruction(cfg.priority_fee_micro_lamports)

        if cost.needs_init:
            notify(ShardPhase.UNLOCKING)
            sig = self.orchestrator.submit(
                [fee_ix, self.instructions.initialize_shard(x=x, y=y, session=session_pk)],
                credential,
                skip_preflight=True,
            )
            if self.base.get_account(pda) is None:
                raise AccountNotCreated(str(pda))
            log_event(log, "shard_initialized", x=x, y=y, signature=sig)
            notify(ShardPhase.SETTLING)
            time.sleep(cfg.settle_delay_s)

        self._check_not_stuck(x, y, pda)

        notify(ShardPhase.DELEGATING)
        self._delegate_with_retry(x, y, credential)

        notify(ShardPhase.AWAITING_FAST_LAYER)
        self._await_fast_layer(x, y, pda)

        notify(ShardPhase.READY)
        return UnlockOutcome.DELEGATED

    def _check_not_stuck(self, x: int, y: int, pda: Pubkey) -> None:
        """Leftover delegation record/metadata on a shard we still own means a half-finished earlier attempt."""
        shard = self.base.get_account(pda)
        if shard is None or shard.owner == self.delegation_program_id:
            return
        for addr in (
            delegation_record_address(self.delegation_program_id, pda),
            delegation_metadata_address(self.delegation_program_id, pda),
        ):
            if self.base.get_account(addr) is not None:
                log_event(log, "shard_delegation_stuck", level=logging.WARNING, x=x, y=y, leftover=str(addr))
                raise StuckDelegationState(x=x, y=y, cause=f"leftover delegation account {addr}")

    def _delegate_with_retry(self, x: int, y: int, credential: SessionCredential) -> str:
        cfg = self.config
        max_attempts = int(cfg.delegate_max_attempts)
        attempt = 1
        while True:
            ixs = [
                priority_fee_instruction(cfg.priority_fee_micro_lamports),
                self.instructions.delegate_shard(x=x, y=y, session=credential.pubkey(), validator=cfg.validator_pubkey),
            ]
            try:
                sig = self.orchestrator.submit(ixs, credential, skip_preflight=True)
                log_event(log, "shard_delegated", x=x, y=y, signature=sig, attempt=attempt)
                return sig
            except MagicplaceError as e:
                if _is_stuck_error(e):
                    raise StuckDelegationState(x=x, y=y, cause=str(e)) from e
                if not is_retryable_delegation_error(e) or attempt >= max_attempts:
                    raise
                delay = attempt * float(cfg.delegate_backoff_s)
                log_event(
                    log,
                    "shard_delegate_retry",
                    level=logging.WARNING,
                    x=x,
                    y=y,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(e),
                )
                time.sleep(delay)
                attempt += 1

    def _await_fast_layer(self, x: int, y: int, pda: Pubkey) -> None:
        cfg = self.config
        attempts = int(cfg.visibility_poll_attempts)
        for i in range(1, attempts + 1):
            acct = fetch_fast_layer_account(self.fast, pda)
            if acct is not None and len(acct.data) > 0:
                log_event(log, "shard_visible", x=x, y=y, polls=i)
                return
            if i < attempts:
                time.sleep(cfg.visibility_poll_interval_s)
        raise ShardNotVisible(x=x, y=y, attempts=attempts)
