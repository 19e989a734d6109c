# src/magicplace/cooldown.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from magicplace.ledger.accounts import SessionAccountSnapshot

DEFAULT_COOLDOWN_LIMIT = 50
DEFAULT_COOLDOWN_PERIOD_S = 30


@dataclass(frozen=True)
class CooldownVerdict:
    allowed: bool
    remaining: Optional[int] = None
    refresh_in: Optional[int] = None
    reason: str = ""


def evaluate_cooldown(
    session_account: Optional[SessionAccountSnapshot],
    now: int,
    *,
    limit: int = DEFAULT_COOLDOWN_LIMIT,
    period: int = DEFAULT_COOLDOWN_PERIOD_S,
    is_owner: bool = False,
) -> CooldownVerdict:
    """Predict whether the program will accept one more placement.

    Mirrors the on-chain window: once `period` seconds have passed since the
    last recorded placement the counter is read as 0. Shard owners are exempt.
    The ledger stays authoritative.
    """
    if is_owner:
        return CooldownVerdict(allowed=True)
    if session_account is None:
        return CooldownVerdict(allowed=True, remaining=int(limit))

    elapsed = int(now) - int(session_account.last_place_timestamp)
    counter = 0 if elapsed >= int(period) else int(session_account.cooldown_counter)

    if counter >= int(limit):
        refresh_in = max(0, int(period) - elapsed)
        return CooldownVerdict(
            allowed=False,
            refresh_in=refresh_in,
            reason=f"Cooldown active: {counter}/{limit} placements used. Try again in {refresh_in}s",
        )
    return CooldownVerdict(allowed=True, remaining=int(limit) - counter)
