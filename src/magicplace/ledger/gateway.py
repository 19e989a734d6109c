# src/magicplace/ledger/gateway.py
from __future__ import annotations

import base64
import itertools
import json
import logging
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from solders.hash import Hash
from solders.pubkey import Pubkey

from magicplace.errors import LedgerRpcError, TransientLedgerError
from magicplace.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("magicplace.ledger")

COMMITMENT = "confirmed"
_DONE_STATUSES = {"confirmed", "finalized"}


@dataclass(frozen=True)
class AccountInfo:
    owner: Pubkey
    data: bytes
    lamports: int
    executable: bool = False


@dataclass(frozen=True)
class BlockhashInfo:
    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class ConfirmationResult:
    signature: str
    # Ledger-reported execution error; None means the transaction succeeded.
    err: Any = None

    @property
    def ok(self) -> bool:
        return self.err is None


class LedgerGateway(Protocol):
    """Query/submit surface of one ledger (base or fast layer)."""

    name: str

    def get_account(self, address: Pubkey) -> Optional[AccountInfo]: ...

    def get_balance(self, address: Pubkey) -> int: ...

    def get_latest_blockhash(self) -> BlockhashInfo: ...

    def send_raw_transaction(self, raw: bytes, *, skip_preflight: bool = False) -> str: ...

    def confirm_transaction(self, signature: str, blockhash: Hash, last_valid_block_height: int) -> ConfirmationResult: ...


class JsonRpcLedgerGateway:
    """LedgerGateway over Solana-style JSON-RPC (HTTP POST, urllib)."""

    def __init__(
        self,
        url: str,
        *,
        name: str = "base",
        timeout_s: float = 30.0,
        poll_interval_s: float = 0.5,
    ) -> None:
        self.url = str(url).rstrip("/")
        self.name = str(name)
        self.timeout_s = float(timeout_s)
        self.poll_interval_s = float(poll_interval_s)
        self._ids = itertools.count(1)

    def _call(self, method: str, params: List[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        req = urllib.request.Request(
            self.url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            raw = e.read().decode("utf-8", errors="replace") if e.fp is not None else ""
            status = int(getattr(e, "code", 0) or 0)
            payload = _try_json(raw)
            if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
                raise _rpc_error(payload["error"]) from e
            if status == 429 or status >= 500:
                raise TransientLedgerError(
                    f"timeout: {self.name} ledger returned HTTP {status} for {method}",
                    {"status": status, "method": method},
                ) from e
            raise LedgerRpcError(rpc_code=status, message=f"{method} failed with HTTP {status}", data=raw) from e
        except (socket.timeout, TimeoutError) as e:
            raise TransientLedgerError(f"timeout: {method} on {self.name} ledger", {"method": method}) from e
        except urllib.error.URLError as e:
            reason = str(getattr(e, "reason", e))
            prefix = "failed to send transaction" if method == "sendTransaction" else f"{method} failed"
            raise TransientLedgerError(f"{prefix}: {reason}", {"method": method, "url": self.url}) from e

        payload = _try_json(raw)
        if not isinstance(payload, dict):
            raise LedgerRpcError(rpc_code=None, message=f"{method} returned non-JSON response", data=raw[:512])
        if isinstance(payload.get("error"), dict):
            raise _rpc_error(payload["error"])
        return payload.get("result")

    def get_account(self, address: Pubkey) -> Optional[AccountInfo]:
        result = self._call("getAccountInfo", [str(address), {"encoding": "base64", "commitment": COMMITMENT}])
        value = (result or {}).get("value")
        if not value:
            return None
        data_field = value.get("data") or ["", "base64"]
        return AccountInfo(
            owner=Pubkey.from_string(str(value["owner"])),
            data=base64.b64decode(data_field[0]),
            lamports=int(value.get("lamports") or 0),
            executable=bool(value.get("executable", False)),
        )

    def get_balance(self, address: Pubkey) -> int:
        result = self._call("getBalance", [str(address), {"commitment": COMMITMENT}])
        return int((result or {}).get("value") or 0)

    def get_latest_blockhash(self) -> BlockhashInfo:
        result = self._call("getLatestBlockhash", [{"commitment": COMMITMENT}])
        value = (result or {}).get("value") or {}
        return BlockhashInfo(
            blockhash=Hash.from_string(str(value["blockhash"])),
            last_valid_block_height=int(value["lastValidBlockHeight"]),
        )

    def get_block_height(self) -> int:
        return int(self._call("getBlockHeight", [{"commitment": COMMITMENT}]) or 0)

    def send_raw_transaction(self, raw: bytes, *, skip_preflight: bool = False) -> str:
        opts = {"encoding": "base64", "skipPreflight": bool(skip_preflight), "preflightCommitment": COMMITMENT}
        sig = self._call("sendTransaction", [base64.b64encode(bytes(raw)).decode("ascii"), opts])
        if not isinstance(sig, str) or not sig:
            raise TransientLedgerError("failed to send transaction: empty signature in response")
        return sig

    def confirm_transaction(self, signature: str, blockhash: Hash, last_valid_block_height: int) -> ConfirmationResult:
        """Poll until confirmed or until the blockhash can no longer land."""
        while True:
            result = self._call("getSignatureStatuses", [[signature], {"searchTransactionHistory": False}])
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]
            if isinstance(status, dict):
                if status.get("err") is not None:
                    return ConfirmationResult(signature=signature, err=status["err"])
                if status.get("confirmationStatus") in _DONE_STATUSES:
                    return ConfirmationResult(signature=signature, err=None)

            height = self.get_block_height()
            if height > int(last_valid_block_height):
                log_event(
                    log,
                    "confirm_expired",
                    level=logging.WARNING,
                    ledger=self.name,
                    signature=signature,
                    blockhash=str(blockhash),
                    block_height=height,
                    last_valid_block_height=int(last_valid_block_height),
                )
                raise TransientLedgerError(
                    f"timeout: transaction {signature} not confirmed before blockhash expired",
                    {"signature": signature, "last_valid_block_height": int(last_valid_block_height)},
                )
            time.sleep(self.poll_interval_s)


def _try_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return None


def _rpc_error(err: Json) -> LedgerRpcError:
    code = err.get("code")
    return LedgerRpcError(
        rpc_code=int(code) if isinstance(code, int) else None,
        message=str(err.get("message") or "rpc error"),
        data=err.get("data"),
    )
