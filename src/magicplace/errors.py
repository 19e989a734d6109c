from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(eq=False)
class MagicplaceError(Exception):
    """Canonical error type for client protocol failures.

    `message` is human-readable and surfaced verbatim to callers.
    """

    code: str
    message: str
    details: Any | None = None

    def __str__(self) -> str:
        return self.message


class WalletUnavailable(MagicplaceError):
    def __init__(self, message: str = "Wallet not connected or does not support message signing") -> None:
        super().__init__("wallet_unavailable", message)


class SignatureDeclined(MagicplaceError):
    def __init__(self, message: str = "Signature request was declined") -> None:
        super().__init__("signature_declined", message)


class InvalidSignatureLength(MagicplaceError):
    def __init__(self, *, expected: int, got: int) -> None:
        super().__init__(
            "invalid_signature_length",
            f"Expected a {expected}-byte signature, got {got} bytes",
            {"expected": expected, "got": got},
        )


class SessionUnavailable(MagicplaceError):
    def __init__(self, message: str = "No active session key") -> None:
        super().__init__("session_unavailable", message)


class SessionExpired(MagicplaceError):
    def __init__(self, message: str = "Session key has expired") -> None:
        super().__init__("session_expired", message)


class InsufficientBalance(MagicplaceError):
    def __init__(self, *, required: int, have: int) -> None:
        shortfall = max(0, int(required) - int(have))
        super().__init__(
            "insufficient_balance",
            f"Insufficient session balance. Need {_sol(required)} SOL but have {_sol(have)} SOL. "
            f"Please top up at least {_sol(shortfall)} SOL to your session key.",
            {"required": int(required), "have": int(have), "shortfall": shortfall},
        )
        self.required = int(required)
        self.have = int(have)


class AccountNotCreated(MagicplaceError):
    def __init__(self, address: str) -> None:
        super().__init__("account_not_created", f"Account {address} not created after initialization", {"address": address})


class TransientLedgerError(MagicplaceError):
    """Timeouts, stale blockhashes, not-yet-writable accounts and send failures."""

    def __init__(self, message: str, details: Any | None = None) -> None:
        super().__init__("transient_ledger_error", message, details)


class ShardNotVisible(TransientLedgerError):
    def __init__(self, *, x: int, y: int, attempts: int) -> None:
        super().__init__(
            f"timeout: shard ({x}, {y}) not visible on the fast layer after {attempts} polls",
            {"x": x, "y": y, "attempts": attempts},
        )


class LedgerRpcError(MagicplaceError):
    def __init__(self, *, rpc_code: Optional[int], message: str, data: Any | None = None) -> None:
        super().__init__("ledger_rpc_error", message, {"rpc_code": rpc_code, "data": data})
        self.rpc_code = rpc_code


class TransactionReverted(MagicplaceError):
    def __init__(self, detail: Any, *, signature: str = "") -> None:
        super().__init__(
            "transaction_reverted",
            f"Transaction failed: {detail}",
            {"detail": detail, "signature": signature},
        )
        self.detail = detail
        self.signature = signature


class StuckDelegationState(MagicplaceError):
    def __init__(self, *, x: int, y: int, cause: str = "") -> None:
        super().__init__(
            "stuck_delegation_state",
            f"This shard ({x}, {y}) appears to be in a stuck delegation state from a previous attempt. "
            "Please try a different shard, or contact support to clean up the state.",
            {"x": x, "y": y, "cause": cause},
        )


class InstructionOrderError(MagicplaceError):
    def __init__(self, message: str) -> None:
        super().__init__("instruction_order", message)


class InvalidShardCoordinate(MagicplaceError):
    def __init__(self, *, x: int, y: int, limit: int) -> None:
        super().__init__(
            "invalid_shard_coordinate",
            f"Invalid shard coordinates: ({x}, {y}). Must be 0-{limit - 1}",
            {"x": x, "y": y},
        )


class InvalidPixel(MagicplaceError):
    def __init__(self, message: str, details: Any | None = None) -> None:
        super().__init__("invalid_pixel", message, details)


class ShardLocked(MagicplaceError):
    def __init__(self, *, x: int, y: int) -> None:
        super().__init__(
            "shard_locked",
            f"Shard ({x}, {y}) is not delegated to the fast layer yet. Unlock it before painting.",
            {"x": x, "y": y},
        )


class CooldownActive(MagicplaceError):
    def __init__(self, *, refresh_in: int) -> None:
        super().__init__(
            "cooldown_active",
            f"Cooldown active: limit reached. Try again in {refresh_in}s",
            {"refresh_in": refresh_in},
        )
        self.refresh_in = int(refresh_in)


class InvalidAmount(MagicplaceError):
    def __init__(self, lamports: int) -> None:
        super().__init__("invalid_amount", f"Amount must be a positive number of lamports; got {lamports}", {"lamports": lamports})


class ConfigError(MagicplaceError):
    def __init__(self, message: str) -> None:
        super().__init__("config_error", message)


def _sol(lamports: int) -> str:
    return f"{int(lamports) / 1_000_000_000:.4f}"
