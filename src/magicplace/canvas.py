# src/magicplace/canvas.py
from __future__ import annotations

import logging
import time
from typing import Optional

from solders.pubkey import Pubkey

from magicplace.config import ClientConfig
from magicplace.cooldown import CooldownVerdict, evaluate_cooldown
from magicplace.errors import CooldownActive, InvalidPixel, SessionUnavailable, ShardLocked
from magicplace.ledger.accounts import (
    AccountDecodeError,
    SessionAccountSnapshot,
    ShardAccountSnapshot,
    decode_session_account,
)
from magicplace.ledger.addresses import local_pixel_index, session_address, shard_for_pixel
from magicplace.ledger.constants import SHARD_DIMENSION
from magicplace.ledger.gateway import LedgerGateway
from magicplace.ledger.instructions import ProgramInstructions
from magicplace.ledger.residency import fetch_fast_layer_account
from magicplace.session.credential import SessionCredential
from magicplace.session.store import SessionStore
from magicplace.shards.delegation import ShardDelegationStateMachine, StatusCallback
from magicplace.structured_logging import log_event
from magicplace.tx.orchestrator import TransactionOrchestrator

log = logging.getLogger("magicplace.canvas")


def pixel_at(snapshot: ShardAccountSnapshot, local_x: int, local_y: int) -> int:
    if not (0 <= int(local_x) < SHARD_DIMENSION and 0 <= int(local_y) < SHARD_DIMENSION):
        raise InvalidPixel(
            f"Invalid local pixel: ({local_x}, {local_y}). Must be 0-{SHARD_DIMENSION - 1}",
            {"local_x": local_x, "local_y": local_y},
        )
    return snapshot.pixel(local_x, local_y)


class CanvasClient:
    """Paint, erase, commit and read pixels through the session credential.

    Placements go to the fast layer; the cooldown estimate is checked first
    so a rejection is explained without a round trip.
    """

    def __init__(
        self,
        *,
        fast: LedgerGateway,
        base: LedgerGateway,
        fast_orchestrator: TransactionOrchestrator,
        shards: ShardDelegationStateMachine,
        store: SessionStore,
        config: ClientConfig,
    ) -> None:
        self.fast = fast
        self.base = base
        self.fast_orchestrator = fast_orchestrator
        self.shards = shards
        self.store = store
        self.config = config
        self.instructions = ProgramInstructions(
            program_id=config.program_pubkey,
            delegation_program_id=config.delegation_program_pubkey,
            magic_program_id=Pubkey.from_string(config.magic_program_id),
            magic_context_id=Pubkey.from_string(config.magic_context_id),
        )

    def _credential(self) -> SessionCredential:
        cred = self.store.current
        if cred is None or cred.keypair is None:
            raise SessionUnavailable()
        return cred

    def session_account(self) -> Optional[SessionAccountSnapshot]:
        addr = session_address(self.config.program_pubkey, self._credential().pubkey())
        acct = fetch_fast_layer_account(self.fast, addr)
        if acct is None or not acct.data:
            acct = self.base.get_account(addr)
        if acct is None:
            return None
        try:
            return decode_session_account(acct.data)
        except AccountDecodeError as e:
            log_event(log, "session_account_decode_failed", level=logging.WARNING, address=str(addr), error=str(e))
            raise

    def cooldown_status(self, *, shard: Optional[ShardAccountSnapshot] = None) -> CooldownVerdict:
        session = self.session_account()
        is_owner = shard is not None and session is not None and shard.creator == session.main_address
        return evaluate_cooldown(
            session,
            int(time.time()),
            limit=self.config.cooldown_limit,
            period=self.config.cooldown_period_s,
            is_owner=is_owner,
        )

    def _writable_shard(self, x: int, y: int, auto_unlock: bool, status_callback: Optional[StatusCallback]) -> ShardAccountSnapshot:
        snap = self.shards.fetch_shard(x, y)
        if snap is not None and snap.residency == "fast":
            return snap
        if not auto_unlock:
            raise ShardLocked(x=x, y=y)
        self.shards.ensure_delegated(x, y, status_callback)
        snap = self.shards.fetch_shard(x, y)
        if snap is None:
            raise ShardLocked(x=x, y=y)
        return snap

    def place_pixel(
        self,
        px: int,
        py: int,
        color: int,
        *,
        auto_unlock: bool = False,
        status_callback: Optional[StatusCallback] = None,
    ) -> str:
        cred = self._credential()
        ix = self.instructions.place_pixel(px=px, py=py, color=color, signer=cred.pubkey())
        x, y = shard_for_pixel(px, py)
        shard = self._writable_shard(x, y, auto_unlock, status_callback)

        verdict = self.cooldown_status(shard=shard)
        if not verdict.allowed:
            log_event(log, "placement_denied", px=px, py=py, refresh_in=verdict.refresh_in)
            raise CooldownActive(refresh_in=int(verdict.refresh_in or 0))

        sig = self.fast_orchestrator.submit([ix], cred, skip_preflight=True)
        log_event(log, "pixel_placed", px=px, py=py, color=color, signature=sig, remaining=verdict.remaining)
        return sig

    def erase_pixel(self, px: int, py: int, *, auto_unlock: bool = False) -> str:
        cred = self._credential()
        ix = self.instructions.erase_pixel(px=px, py=py, signer=cred.pubkey())
        x, y = shard_for_pixel(px, py)
        self._writable_shard(x, y, auto_unlock, None)
        sig = self.fast_orchestrator.submit([ix], cred, skip_preflight=True)
        log_event(log, "pixel_erased", px=px, py=py, signature=sig)
        return sig

    def commit_shard(self, x: int, y: int) -> str:
        cred = self._credential()
        ix = self.instructions.commit_shard(x=x, y=y, payer=cred.pubkey())
        sig = self.fast_orchestrator.submit([ix], cred, skip_preflight=True)
        log_event(log, "shard_committed", x=x, y=y, signature=sig)
        return sig

    def get_pixel(self, px: int, py: int) -> int:
        x, y = shard_for_pixel(px, py)
        snap = self.shards.fetch_shard(x, y)
        if snap is None:
            return 0
        return snap.pixels[local_pixel_index(px, py)]
