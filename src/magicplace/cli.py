# src/magicplace/cli.py
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from magicplace.client import MagicplaceClient, create_client
from magicplace.config import LAMPORTS_PER_SOL, load_client_config
from magicplace.crypto.keys import load_keypair_file
from magicplace.env import load_dotenv_if_present
from magicplace.errors import ConfigError, MagicplaceError, SessionUnavailable, WalletUnavailable
from magicplace.ledger.addresses import session_address
from magicplace.shards.delegation import ShardPhase
from magicplace.structured_logging import configure_structured_logging, log_event
from magicplace.tx.orchestrator import Signer

Json = Dict[str, Any]

log = logging.getLogger("magicplace.cli")

DEFAULT_WALLET_PATH = "~/.config/solana/id.json"


def _out(doc: Json) -> None:
    print(json.dumps(doc, sort_keys=True, default=str))


def _require_session(client: MagicplaceClient, salt: str) -> None:
    wallet = client.session.wallet
    if wallet is None:
        raise SessionUnavailable()
    if client.store.restore(wallet.pubkey(), salt) is None:
        raise SessionUnavailable("No stored session key for this wallet; run `magicplace setup` first")


def _cmd_setup(client: MagicplaceClient, args: argparse.Namespace) -> int:
    cred = client.session.ensure(args.salt)
    _out(
        {
            "ok": True,
            "session": str(cred.pubkey()),
            "expires_at": cred.expires_at,
            "states": [s.value for s in client.session.history],
        }
    )
    return 0


def _cmd_status(client: MagicplaceClient, args: argparse.Namespace) -> int:
    _require_session(client, args.salt)
    cred = client.store.current
    if cred is None:
        raise SessionUnavailable()
    pk = cred.pubkey()
    balance = client.base.get_balance(pk)
    acct = client.canvas.session_account()
    _out(
        {
            "ok": True,
            "session": str(pk),
            "session_account": str(session_address(client.config.program_pubkey, pk)),
            "active": cred.active,
            "expires_at": cred.expires_at,
            "balance_sol": balance / LAMPORTS_PER_SOL,
            "cooldown_counter": None if acct is None else acct.cooldown_counter,
        }
    )
    return 0


def _cmd_cost(client: MagicplaceClient, args: argparse.Namespace) -> int:
    cost = client.shards.estimate_unlock_cost(args.x, args.y)
    _out(
        {
            "ok": True,
            "status": cost.status.value,
            "needs_init": cost.needs_init,
            "needs_delegate": cost.needs_delegate,
            "required_sol": cost.required_lamports / LAMPORTS_PER_SOL,
        }
    )
    return 0


def _cmd_unlock(client: MagicplaceClient, args: argparse.Namespace) -> int:
    _require_session(client, args.salt)

    def _progress(phase: ShardPhase) -> None:
        print(phase.value, file=sys.stderr)

    outcome = client.shards.ensure_delegated(args.x, args.y, _progress)
    _out({"ok": True, "outcome": outcome.value})
    return 0


def _cmd_cooldown(client: MagicplaceClient, args: argparse.Namespace) -> int:
    _require_session(client, args.salt)
    v = client.canvas.cooldown_status()
    _out({"ok": True, "allowed": v.allowed, "remaining": v.remaining, "refresh_in": v.refresh_in, "reason": v.reason})
    return 0


def _cmd_place(client: MagicplaceClient, args: argparse.Namespace) -> int:
    _require_session(client, args.salt)
    sig = client.canvas.place_pixel(args.px, args.py, args.color, auto_unlock=bool(args.auto_unlock))
    _out({"ok": True, "signature": sig})
    return 0


def _cmd_erase(client: MagicplaceClient, args: argparse.Namespace) -> int:
    _require_session(client, args.salt)
    sig = client.canvas.erase_pixel(args.px, args.py)
    _out({"ok": True, "signature": sig})
    return 0


def _cmd_commit(client: MagicplaceClient, args: argparse.Namespace) -> int:
    _require_session(client, args.salt)
    sig = client.canvas.commit_shard(args.x, args.y)
    _out({"ok": True, "signature": sig})
    return 0


def _cmd_pixel(client: MagicplaceClient, args: argparse.Namespace) -> int:
    _out({"ok": True, "color": client.canvas.get_pixel(args.px, args.py)})
    return 0


def _cmd_topup(client: MagicplaceClient, args: argparse.Namespace) -> int:
    _require_session(client, args.salt)
    lamports = int(round(float(args.sol) * LAMPORTS_PER_SOL))
    sig = client.session.fund_session(lamports)
    _out({"ok": True, "signature": sig, "lamports": lamports})
    return 0


def _cmd_revoke(client: MagicplaceClient, args: argparse.Namespace) -> int:
    wallet = client.session.wallet
    if wallet is None:
        raise SessionUnavailable()
    client.store.revoke(wallet.pubkey(), args.salt)
    _out({"ok": True})
    return 0


def _load_wallet(path: str) -> Optional[Signer]:
    # Read-only commands work without a wallet; signing commands raise later.
    try:
        return load_keypair_file(path)
    except WalletUnavailable as e:
        log_event(log, "wallet_unavailable", level=logging.WARNING, path=path, error=e.message)
        return None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="magicplace", description="Magicplace canvas client (session keys, shard unlock, painting)")
    p.add_argument("--config", default=os.environ.get("MAGICPLACE_CONFIG_PATH", ""))
    p.add_argument("--wallet", default=os.environ.get("MAGICPLACE_WALLET_PATH", DEFAULT_WALLET_PATH))
    p.add_argument("--salt", default="", help="session salt (default: config session_salt)")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("setup", help="derive, authorize, fund and delegate the session key").set_defaults(fn=_cmd_setup)
    sub.add_parser("status", help="show the stored session key").set_defaults(fn=_cmd_status)
    sub.add_parser("cooldown", help="predict whether a placement is allowed now").set_defaults(fn=_cmd_cooldown)
    sub.add_parser("revoke", help="forget the stored session key").set_defaults(fn=_cmd_revoke)
    topup = sub.add_parser("topup", help="transfer SOL from the wallet to the session key")
    topup.add_argument("sol", type=float)
    topup.set_defaults(fn=_cmd_topup)

    for name, fn, help_ in (
        ("cost", _cmd_cost, "estimate the SOL needed to unlock a shard"),
        ("unlock", _cmd_unlock, "initialize and delegate a shard"),
        ("commit", _cmd_commit, "commit a delegated shard back to the base ledger"),
    ):
        sp = sub.add_parser(name, help=help_)
        sp.add_argument("x", type=int)
        sp.add_argument("y", type=int)
        sp.set_defaults(fn=fn)

    place = sub.add_parser("place", help="paint one pixel")
    place.add_argument("px", type=int)
    place.add_argument("py", type=int)
    place.add_argument("color", type=int)
    place.add_argument("--auto-unlock", action="store_true")
    place.set_defaults(fn=_cmd_place)

    for name, fn, help_ in (("erase", _cmd_erase, "erase one pixel"), ("pixel", _cmd_pixel, "read one pixel")):
        sp = sub.add_parser(name, help=help_)
        sp.add_argument("px", type=int)
        sp.add_argument("py", type=int)
        sp.set_defaults(fn=fn)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    # Load .env early so MAGICPLACE_* vars exist before anything reads them.
    load_dotenv_if_present()
    args = build_parser().parse_args(argv)

    try:
        cfg = load_client_config(config_path=args.config or None)
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2
    configure_structured_logging(cfg.log_level)
    args.salt = args.salt or cfg.session_salt

    try:
        wallet = _load_wallet(args.wallet)
        client = create_client(cfg, wallet=wallet)
        return int(args.fn(client, args))
    except MagicplaceError as e:
        log_event(log, "command_failed", level=logging.ERROR, command=args.command, code=e.code, error=e.message)
        _out({"ok": False, "code": e.code, "error": e.message, "details": e.details})
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
