# src/magicplace/testing/ledger.py
from __future__ import annotations

import hashlib
import struct
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from magicplace.crypto.sig import verify_ed25519_signature
from magicplace.errors import SignatureDeclined
from magicplace.ledger.accounts import (
    decode_pixel_shard,
    decode_session_account,
    encode_pixel_shard,
    encode_session_account,
)
from magicplace.ledger.constants import ED25519_PROGRAM_ID, SHARD_DIMENSION, SYSTEM_PROGRAM_ID
from magicplace.ledger.gateway import AccountInfo, BlockhashInfo, ConfirmationResult
from magicplace.ledger.instructions import instruction_discriminator

Json = Dict[str, Any]

# Anchor custom error numbering for the canvas program.
ERR_SHARD_MISMATCH = 6002
ERR_INVALID_AUTH = 6004
ERR_COOLDOWN = 6005
# System program "account already in use".
ERR_ALREADY_IN_USE = 0

_PROGRAM_IXS = (
    "initialize_user",
    "delegate_user",
    "initialize_shard",
    "delegate_shard",
    "place_pixel",
    "erase_pixel",
    "commit_shard",
)
_DISC_TO_NAME = {instruction_discriminator(n): n for n in _PROGRAM_IXS}


@dataclass(frozen=True)
class SentTransaction:
    signature: str
    raw: bytes
    skip_preflight: bool
    tx: VersionedTransaction

    @property
    def fee_payer(self) -> Pubkey:
        return self.tx.message.account_keys[0]

    def program_ids(self) -> List[Pubkey]:
        keys = self.tx.message.account_keys
        return [keys[ix.program_id_index] for ix in self.tx.message.instructions]

    def instruction_names(self) -> List[str]:
        """Program instruction names, or the program id for non-canvas instructions."""
        out: List[str] = []
        keys = self.tx.message.account_keys
        for ix in self.tx.message.instructions:
            name = _DISC_TO_NAME.get(bytes(ix.data)[:8])
            out.append(name if name is not None else str(keys[ix.program_id_index]))
        return out


class InMemoryLedger:
    """
    In-process ledger used for unit tests.

    - Implements the LedgerGateway surface
    - Decodes submitted transactions and hands them to an executor
    - Failure scripting: queued send errors, get_account errors, hidden accounts
    """

    def __init__(self, *, name: str = "base") -> None:
        self.name = name
        self.accounts: Dict[Pubkey, AccountInfo] = {}
        self.balances: Dict[Pubkey, int] = {}
        self.block_height = 100
        self.executor: Optional[Callable[["InMemoryLedger", VersionedTransaction], Any]] = None

        self.calls: List[str] = []
        self.sent: List[SentTransaction] = []
        self.send_errors: List[BaseException] = []
        self.get_account_error: Optional[BaseException] = None
        self._hidden: Dict[Pubkey, int] = {}
        self._results: Dict[str, Any] = {}
        self._blockhash_n = 0

    # ---- LedgerGateway ----

    def get_account(self, address: Pubkey) -> Optional[AccountInfo]:
        self.calls.append("get_account")
        if self.get_account_error is not None:
            raise self.get_account_error
        remaining = self._hidden.get(address, 0)
        if remaining > 0:
            self._hidden[address] = remaining - 1
            return None
        return self.accounts.get(address)

    def get_balance(self, address: Pubkey) -> int:
        self.calls.append("get_balance")
        return int(self.balances.get(address, 0))

    def get_latest_blockhash(self) -> BlockhashInfo:
        self.calls.append("get_latest_blockhash")
        self._blockhash_n += 1
        h = hashlib.sha256(f"{self.name}:{self._blockhash_n}".encode("utf-8")).digest()
        return BlockhashInfo(blockhash=Hash(h), last_valid_block_height=self.block_height + 150)

    def send_raw_transaction(self, raw: bytes, *, skip_preflight: bool = False) -> str:
        self.calls.append("send_raw_transaction")
        if self.send_errors:
            raise self.send_errors.pop(0)
        tx = VersionedTransaction.from_bytes(bytes(raw))
        signature = str(tx.signatures[0])
        self.sent.append(SentTransaction(signature=signature, raw=bytes(raw), skip_preflight=skip_preflight, tx=tx))

        err: Any = None
        if self.executor is not None:
            err = self.executor(self, tx)
        self._results[signature] = err
        self.block_height += 1
        return signature

    def confirm_transaction(self, signature: str, blockhash: Hash, last_valid_block_height: int) -> ConfirmationResult:
        self.calls.append("confirm_transaction")
        return ConfirmationResult(signature=signature, err=self._results.get(signature))

    # ---- helpers for tests / harness ----

    def fund(self, address: Pubkey, lamports: int) -> None:
        self.balances[address] = self.balances.get(address, 0) + int(lamports)

    def put_account(self, address: Pubkey, *, owner: Pubkey, data: bytes, lamports: int = 1) -> None:
        self.accounts[address] = AccountInfo(owner=owner, data=bytes(data), lamports=int(lamports))

    def hide_for(self, address: Pubkey, polls: int) -> None:
        """Make get_account(address) report None for the next `polls` lookups."""
        self._hidden[address] = int(polls)

    def count(self, call: str) -> int:
        return sum(1 for c in self.calls if c == call)

    def _snapshot(self) -> Tuple[Dict[Pubkey, AccountInfo], Dict[Pubkey, int]]:
        return dict(self.accounts), dict(self.balances)

    def _restore(self, snap: Tuple[Dict[Pubkey, AccountInfo], Dict[Pubkey, int]]) -> None:
        self.accounts, self.balances = dict(snap[0]), dict(snap[1])


class _IxFailed(Exception):
    def __init__(self, index: int, code: Any) -> None:
        super().__init__(f"instruction {index} failed: {code}")
        self.detail = {"InstructionError": [index, code]}


class FakeCanvasProgram:
    """Executes canvas-program instructions against a base/fast ledger pair.

    Not a full program: just enough state transitions for the client
    protocol (accounts appear, owners change, pixels and counters move).
    """

    def __init__(
        self,
        *,
        base: InMemoryLedger,
        fast: InMemoryLedger,
        program_id: Pubkey,
        delegation_program_id: Pubkey,
        shard_rent_lamports: int = 0,
        fast_visibility_delay: int = 0,
        cooldown_limit: int = 50,
        cooldown_period_s: int = 30,
    ) -> None:
        self.base = base
        self.fast = fast
        self.program_id = program_id
        self.delegation_program_id = delegation_program_id
        self.shard_rent_lamports = int(shard_rent_lamports)
        self.fast_visibility_delay = int(fast_visibility_delay)
        self.cooldown_limit = int(cooldown_limit)
        self.cooldown_period_s = int(cooldown_period_s)
        self.executed: List[Tuple[str, str]] = []
        base.executor = self.execute
        fast.executor = self.execute

    def execute(self, ledger: InMemoryLedger, tx: VersionedTransaction) -> Any:
        snaps = (self.base._snapshot(), self.fast._snapshot())
        msg = tx.message
        keys = list(msg.account_keys)
        ixs = list(msg.instructions)
        try:
            for idx, cix in enumerate(ixs):
                program = keys[cix.program_id_index]
                accts = [keys[i] for i in bytes(cix.accounts)]
                data = bytes(cix.data)
                self._dispatch(ledger, idx, program, accts, data, keys, ixs)
        except _IxFailed as e:
            self.base._restore(snaps[0])
            self.fast._restore(snaps[1])
            return e.detail
        return None

    def _dispatch(
        self,
        ledger: InMemoryLedger,
        idx: int,
        program: Pubkey,
        accts: List[Pubkey],
        data: bytes,
        keys: List[Pubkey],
        ixs: List[Any],
    ) -> None:
        if program == SYSTEM_PROGRAM_ID:
            (kind,) = struct.unpack_from("<I", data, 0)
            if kind == 2:
                (lamports,) = struct.unpack_from("<Q", data, 4)
                if ledger.balances.get(accts[0], 0) < lamports:
                    raise _IxFailed(idx, {"Custom": 1})
                ledger.balances[accts[0]] -= lamports
                ledger.fund(accts[1], lamports)
            self.executed.append((ledger.name, "transfer"))
            return
        if program == ED25519_PROGRAM_ID:
            self._verify_ed25519(idx, data)
            return
        if program != self.program_id:
            # Compute budget and other auxiliary programs.
            return

        name = _DISC_TO_NAME.get(data[:8])
        if name is None:
            raise _IxFailed(idx, "InvalidInstructionData")
        self.executed.append((ledger.name, name))
        getattr(self, f"_ix_{name}")(ledger, idx, accts, data[8:], keys, ixs)

    def _verify_ed25519(self, idx: int, data: bytes) -> None:
        _n, _pad, sig_off, _si, pk_off, _pi, msg_off, msg_len, _mi = struct.unpack_from("<BBHHHHHHH", data, 0)
        pubkey = data[pk_off : pk_off + 32]
        sig = data[sig_off : sig_off + 64]
        message = data[msg_off : msg_off + msg_len]
        if not verify_ed25519_signature(message=message, sig=sig, pubkey=pubkey):
            raise _IxFailed(idx, {"Custom": 2})

    # ---- program instructions ----

    def _ix_initialize_user(self, ledger, idx, accts, args, keys, ixs) -> None:
        user, authority = accts[0], accts[1]
        main_wallet = Pubkey.from_bytes(args[:32])
        first = ixs[0]
        if keys[first.program_id_index] != ED25519_PROGRAM_ID:
            raise _IxFailed(idx, {"Custom": ERR_INVALID_AUTH})
        fdata = bytes(first.data)
        (pk_off,) = struct.unpack_from("<H", fdata, 6)
        if fdata[pk_off : pk_off + 32] != bytes(main_wallet):
            raise _IxFailed(idx, {"Custom": ERR_INVALID_AUTH})
        if user in ledger.accounts:
            raise _IxFailed(idx, {"Custom": ERR_ALREADY_IN_USE})
        ledger.put_account(
            user,
            owner=self.program_id,
            data=encode_session_account(main_address=main_wallet, authority=authority),
        )

    def _delegate(self, idx: int, pda: Pubkey) -> None:
        acct = self.base.accounts.get(pda)
        if acct is None:
            raise _IxFailed(idx, "AccountNotFound")
        if acct.owner == self.delegation_program_id:
            raise _IxFailed(idx, "InvalidAccountOwner")
        self.base.accounts[pda] = replace(acct, owner=self.delegation_program_id)
        self.fast.accounts[pda] = replace(acct, owner=self.program_id)
        if self.fast_visibility_delay:
            self.fast.hide_for(pda, self.fast_visibility_delay)

    def _ix_delegate_user(self, ledger, idx, accts, args, keys, ixs) -> None:
        self._delegate(idx, accts[0])

    def _ix_initialize_shard(self, ledger, idx, accts, args, keys, ixs) -> None:
        shard, session, authority = accts[0], accts[1], accts[2]
        x, y = struct.unpack_from("<HH", args, 0)
        if shard in ledger.accounts:
            raise _IxFailed(idx, {"Custom": ERR_ALREADY_IN_USE})
        sess = self.fast.accounts.get(session) or self.base.accounts.get(session)
        if sess is None:
            raise _IxFailed(idx, "AccountNotFound")
        if ledger.balances.get(authority, 0) < self.shard_rent_lamports:
            raise _IxFailed(idx, {"Custom": 1})
        ledger.balances[authority] = ledger.balances.get(authority, 0) - self.shard_rent_lamports
        creator = decode_session_account(sess.data).main_address
        ledger.put_account(shard, owner=self.program_id, data=encode_pixel_shard(x, y, creator=creator))

    def _ix_delegate_shard(self, ledger, idx, accts, args, keys, ixs) -> None:
        self._delegate(idx, accts[4])

    def _paint(self, ledger, idx, accts, args, color: Optional[int]) -> None:
        shard_key, session_key = accts[0], accts[1]
        if color is None:
            sx, sy, px, py = struct.unpack_from("<HHII", args, 0)
        else:
            sx, sy, px, py, color = struct.unpack_from("<HHIIB", args, 0)
        shard_acct = ledger.accounts.get(shard_key)
        session_acct = ledger.accounts.get(session_key)
        if shard_acct is None or session_acct is None:
            raise _IxFailed(idx, "AccountNotFound")
        shard = decode_pixel_shard(shard_acct.data)
        session = decode_session_account(session_acct.data)
        if shard.coordinate != (px // SHARD_DIMENSION, py // SHARD_DIMENSION) or shard.coordinate != (sx, sy):
            raise _IxFailed(idx, {"Custom": ERR_SHARD_MISMATCH})

        counter, last_ts = session.cooldown_counter, session.last_place_timestamp
        if color is not None and shard.creator != session.main_address:
            now = int(time.time())
            if counter >= self.cooldown_limit:
                if now - last_ts >= self.cooldown_period_s:
                    counter = 0
                else:
                    raise _IxFailed(idx, {"Custom": ERR_COOLDOWN})
            counter += 1
            if counter >= self.cooldown_limit:
                last_ts = now

        pixels = bytearray(shard.pixels)
        pixels[(py % SHARD_DIMENSION) * SHARD_DIMENSION + (px % SHARD_DIMENSION)] = color or 0
        ledger.accounts[shard_key] = replace(
            shard_acct,
            data=encode_pixel_shard(sx, sy, creator=shard.creator, pixels=bytes(pixels), bump=shard.bump),
        )
        ledger.accounts[session_key] = replace(
            session_acct,
            data=encode_session_account(
                main_address=session.main_address,
                authority=session.authority,
                cooldown_counter=counter,
                last_place_timestamp=last_ts,
                bump=session.bump,
            ),
        )

    def _ix_place_pixel(self, ledger, idx, accts, args, keys, ixs) -> None:
        self._paint(ledger, idx, accts, args, color=0xFF)

    def _ix_erase_pixel(self, ledger, idx, accts, args, keys, ixs) -> None:
        self._paint(ledger, idx, accts, args, color=None)

    def _ix_commit_shard(self, ledger, idx, accts, args, keys, ixs) -> None:
        shard_key = accts[1]
        acct = self.fast.accounts.get(shard_key)
        if acct is None:
            raise _IxFailed(idx, "AccountNotFound")
        base_acct = self.base.accounts.get(shard_key)
        owner = base_acct.owner if base_acct is not None else self.delegation_program_id
        self.base.accounts[shard_key] = replace(acct, owner=owner)


class DecliningWallet:
    """A wallet whose holder rejects every signature prompt."""

    def __init__(self, keypair: Optional[Keypair] = None) -> None:
        self._kp = keypair or Keypair()

    def pubkey(self) -> Pubkey:
        return self._kp.pubkey()

    def sign_message(self, message: bytes) -> Signature:
        raise SignatureDeclined("User rejected the request.")


class CountingWallet:
    """Wraps a Keypair and records every message it was asked to sign."""

    def __init__(self, keypair: Keypair) -> None:
        self._kp = keypair
        self.prompts: List[bytes] = []

    def pubkey(self) -> Pubkey:
        return self._kp.pubkey()

    def sign_message(self, message: bytes) -> Signature:
        self.prompts.append(bytes(message))
        return self._kp.sign_message(message)


def deterministic_keypair(label: str) -> Keypair:
    """TEST ONLY: Keypair derived from a stable label."""
    return Keypair.from_seed(hashlib.sha256(("magicplace-test:" + (label or "")).encode("utf-8")).digest())
