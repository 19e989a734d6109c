# src/magicplace/ledger/accounts.py
from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Optional, Tuple

from solders.pubkey import Pubkey

from magicplace.ledger.constants import PIXELS_PER_SHARD, SHARD_DIMENSION


def account_discriminator(name: str) -> bytes:
    """Anchor account discriminator: sha256("account:<Name>")[:8]."""
    return hashlib.sha256(f"account:{name}".encode("utf-8")).digest()[:8]


PIXEL_SHARD_DISCRIMINATOR = account_discriminator("PixelShard")
SESSION_ACCOUNT_DISCRIMINATOR = account_discriminator("SessionAccount")


class AccountDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class ShardAccountSnapshot:
    coordinate: Tuple[int, int]
    pixels: bytes
    creator: Pubkey
    bump: int
    # Which ledger the snapshot was read from: "fast" | "base".
    residency: str = "base"

    def pixel(self, local_x: int, local_y: int) -> int:
        return self.pixels[int(local_y) * SHARD_DIMENSION + int(local_x)]


@dataclass(frozen=True)
class SessionAccountSnapshot:
    main_address: Pubkey
    authority: Pubkey
    cooldown_counter: int
    last_place_timestamp: int
    bump: int


def _check_disc(data: bytes, disc: bytes, name: str) -> None:
    if len(data) < 8 or data[:8] != disc:
        raise AccountDecodeError(f"account data is not a {name}")


def decode_pixel_shard(data: bytes, *, residency: str = "base") -> ShardAccountSnapshot:
    _check_disc(data, PIXEL_SHARD_DISCRIMINATOR, "PixelShard")
    try:
        off = 8
        x, y, n = struct.unpack_from("<HHI", data, off)
        off += 8
        pixels = bytes(data[off : off + n])
        if len(pixels) != n:
            raise AccountDecodeError(f"pixel buffer truncated: want {n} bytes, have {len(pixels)}")
        off += n
        creator = Pubkey.from_bytes(data[off : off + 32])
        off += 32
        (bump,) = struct.unpack_from("<B", data, off)
    except (struct.error, ValueError) as e:
        raise AccountDecodeError(f"PixelShard data truncated: {e}") from e
    return ShardAccountSnapshot(coordinate=(x, y), pixels=pixels, creator=creator, bump=bump, residency=residency)


def encode_pixel_shard(x: int, y: int, *, creator: Pubkey, pixels: Optional[bytes] = None, bump: int = 255) -> bytes:
    buf = bytes(pixels) if pixels is not None else bytes(PIXELS_PER_SHARD)
    return (
        PIXEL_SHARD_DISCRIMINATOR
        + struct.pack("<HHI", int(x), int(y), len(buf))
        + buf
        + bytes(creator)
        + struct.pack("<B", int(bump))
    )


def decode_session_account(data: bytes) -> SessionAccountSnapshot:
    _check_disc(data, SESSION_ACCOUNT_DISCRIMINATOR, "SessionAccount")
    try:
        main = Pubkey.from_bytes(data[8:40])
        authority = Pubkey.from_bytes(data[40:72])
        counter, last_ts, bump = struct.unpack_from("<BQB", data, 72)
    except (struct.error, ValueError) as e:
        raise AccountDecodeError(f"SessionAccount data truncated: {e}") from e
    return SessionAccountSnapshot(
        main_address=main,
        authority=authority,
        cooldown_counter=counter,
        last_place_timestamp=last_ts,
        bump=bump,
    )


def encode_session_account(
    *,
    main_address: Pubkey,
    authority: Pubkey,
    cooldown_counter: int = 0,
    last_place_timestamp: int = 0,
    bump: int = 255,
) -> bytes:
    return (
        SESSION_ACCOUNT_DISCRIMINATOR
        + bytes(main_address)
        + bytes(authority)
        + struct.pack("<BQB", int(cooldown_counter), int(last_place_timestamp), int(bump))
    )
