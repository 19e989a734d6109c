from __future__ import annotations

import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, List

import pytest

# Ensure local "src/" takes precedence over any globally-installed "magicplace" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from magicplace.client import MagicplaceClient, create_client  # noqa: E402
from magicplace.config import ClientConfig, default_client_config  # noqa: E402
from magicplace.session.store import MemorySessionBackend, SessionStore  # noqa: E402
from magicplace.testing.ledger import CountingWallet, FakeCanvasProgram, InMemoryLedger, deterministic_keypair  # noqa: E402


@dataclass
class World:
    cfg: ClientConfig
    base: InMemoryLedger
    fast: InMemoryLedger
    program: FakeCanvasProgram
    wallet: CountingWallet
    client: MagicplaceClient


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> List[float]:
    """Record time.sleep calls instead of sleeping."""
    import time

    out: List[float] = []
    monkeypatch.setattr(time, "sleep", lambda s: out.append(float(s)))
    return out


@pytest.fixture
def make_world() -> Callable[..., World]:
    def _make(*, store: SessionStore | None = None, fast_visibility_delay: int = 0, **overrides: Any) -> World:
        cfg = replace(default_client_config(), **overrides)
        base = InMemoryLedger(name="base")
        fast = InMemoryLedger(name="fast")
        program = FakeCanvasProgram(
            base=base,
            fast=fast,
            program_id=cfg.program_pubkey,
            delegation_program_id=cfg.delegation_program_pubkey,
            fast_visibility_delay=fast_visibility_delay,
            cooldown_limit=cfg.cooldown_limit,
            cooldown_period_s=cfg.cooldown_period_s,
        )
        wallet = CountingWallet(deterministic_keypair("wallet"))
        base.fund(wallet.pubkey(), 2_000_000_000)
        client = create_client(
            cfg,
            wallet=wallet,
            base=base,
            fast=fast,
            store=store or SessionStore(MemorySessionBackend()),
        )
        return World(cfg=cfg, base=base, fast=fast, program=program, wallet=wallet, client=client)

    return _make
