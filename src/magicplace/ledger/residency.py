# src/magicplace/ledger/residency.py
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Tuple

from solders.pubkey import Pubkey

from magicplace.errors import MagicplaceError
from magicplace.ledger.gateway import AccountInfo, LedgerGateway
from magicplace.structured_logging import log_event

log = logging.getLogger("magicplace.ledger")

# A fast-layer lookup that fails is read as "not found there" and the base
# ledger decides. Base-ledger failures always propagate.
FAST_LAYER_FAILURE_POLICY = "treat-as-absent"


class DelegationStatus(str, Enum):
    NOT_INITIALIZED = "not-initialized"
    PRESENT_UNDELEGATED = "present-undelegated"
    DELEGATED = "delegated"
    # UI-only transient marker; never returned by resolve_residency.
    CHECKING = "checking"


def fetch_fast_layer_account(fast: LedgerGateway, address: Pubkey) -> Optional[AccountInfo]:
    try:
        return fast.get_account(address)
    except MagicplaceError as e:
        log_event(
            log,
            "fast_layer_lookup_failed",
            level=logging.WARNING,
            address=str(address),
            policy=FAST_LAYER_FAILURE_POLICY,
            error=str(e),
        )
        return None


def resolve_residency(
    address: Pubkey,
    *,
    fast: LedgerGateway,
    base: LedgerGateway,
    program_id: Pubkey,
    delegation_program_id: Pubkey,
) -> Tuple[DelegationStatus, Optional[AccountInfo]]:
    """Fast layer first, then the base ledger. Never queries both in parallel.

    Returns the status plus the account as last observed (None when absent).
    """
    fast_acct = fetch_fast_layer_account(fast, address)
    if fast_acct is not None and len(fast_acct.data) > 0:
        return DelegationStatus.DELEGATED, fast_acct

    base_acct = base.get_account(address)
    if base_acct is None:
        return DelegationStatus.NOT_INITIALIZED, None
    if base_acct.owner == delegation_program_id:
        return DelegationStatus.DELEGATED, base_acct
    if base_acct.owner != program_id:
        log_event(
            log,
            "unexpected_account_owner",
            level=logging.WARNING,
            address=str(address),
            owner=str(base_acct.owner),
        )
    return DelegationStatus.PRESENT_UNDELEGATED, base_acct
