# src/magicplace/client.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from magicplace.canvas import CanvasClient
from magicplace.config import ClientConfig
from magicplace.ledger.gateway import JsonRpcLedgerGateway, LedgerGateway
from magicplace.session.protocol import SessionKeyProtocol
from magicplace.session.store import SessionStore, SqliteSessionBackend
from magicplace.shards.delegation import ShardDelegationStateMachine
from magicplace.tx.orchestrator import Signer, TransactionOrchestrator, make_transaction_builder


@dataclass
class MagicplaceClient:
    config: ClientConfig
    base: LedgerGateway
    fast: LedgerGateway
    store: SessionStore
    session: SessionKeyProtocol
    shards: ShardDelegationStateMachine
    canvas: CanvasClient


def create_client(
    config: ClientConfig,
    *,
    wallet: Optional[Signer],
    base: Optional[LedgerGateway] = None,
    fast: Optional[LedgerGateway] = None,
    store: Optional[SessionStore] = None,
) -> MagicplaceClient:
    """Wire the components together. Ledgers and store can be injected."""
    base = base or JsonRpcLedgerGateway(
        config.base_rpc_url,
        name="base",
        timeout_s=config.rpc_timeout_s,
        poll_interval_s=config.confirm_poll_interval_s,
    )
    fast = fast or JsonRpcLedgerGateway(
        config.fast_rpc_url,
        name="fast",
        timeout_s=config.rpc_timeout_s,
        poll_interval_s=config.confirm_poll_interval_s,
    )
    store = store or SessionStore(SqliteSessionBackend.at_path(config.session_db_path))

    # One signing variant per client, chosen here.
    builder = make_transaction_builder(config.transaction_format)
    base_tx = TransactionOrchestrator(base, builder)
    fast_tx = TransactionOrchestrator(fast, builder)

    session = SessionKeyProtocol(wallet=wallet, store=store, base=base, fast=fast, orchestrator=base_tx, config=config)
    shards = ShardDelegationStateMachine(base=base, fast=fast, orchestrator=base_tx, store=store, config=config)
    canvas = CanvasClient(
        fast=fast,
        base=base,
        fast_orchestrator=fast_tx,
        shards=shards,
        store=store,
        config=config,
    )
    return MagicplaceClient(
        config=config,
        base=base,
        fast=fast,
        store=store,
        session=session,
        shards=shards,
        canvas=canvas,
    )
