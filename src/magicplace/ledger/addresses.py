# src/magicplace/ledger/addresses.py
from __future__ import annotations

import struct
from typing import Tuple

from solders.pubkey import Pubkey

from magicplace.errors import InvalidPixel, InvalidShardCoordinate
from magicplace.ledger.constants import (
    BUFFER_SEED,
    CANVAS_RES,
    DELEGATION_METADATA_SEED,
    DELEGATION_RECORD_SEED,
    SESSION_SEED,
    SHARD_DIMENSION,
    SHARD_SEED,
    SHARDS_PER_DIM,
)


def validate_shard_coordinate(x: int, y: int) -> Tuple[int, int]:
    x = int(x)
    y = int(y)
    if not (0 <= x < SHARDS_PER_DIM and 0 <= y < SHARDS_PER_DIM):
        raise InvalidShardCoordinate(x=x, y=y, limit=SHARDS_PER_DIM)
    return x, y


def validate_pixel_coordinate(px: int, py: int) -> Tuple[int, int]:
    px = int(px)
    py = int(py)
    if not (0 <= px < CANVAS_RES and 0 <= py < CANVAS_RES):
        raise InvalidPixel(
            f"Invalid pixel coordinates: ({px}, {py}). Must be 0-{CANVAS_RES - 1}",
            {"px": px, "py": py},
        )
    return px, py


def shard_for_pixel(px: int, py: int) -> Tuple[int, int]:
    px, py = validate_pixel_coordinate(px, py)
    return px // SHARD_DIMENSION, py // SHARD_DIMENSION


def local_pixel_index(px: int, py: int) -> int:
    """Index into a shard's pixel buffer: local_y * 90 + local_x."""
    return (int(py) % SHARD_DIMENSION) * SHARD_DIMENSION + (int(px) % SHARD_DIMENSION)


def shard_address(program_id: Pubkey, x: int, y: int) -> Pubkey:
    x, y = validate_shard_coordinate(x, y)
    seeds = [SHARD_SEED, struct.pack("<H", x), struct.pack("<H", y)]
    pda, _bump = Pubkey.find_program_address(seeds, program_id)
    return pda


def session_address(program_id: Pubkey, session_pubkey: Pubkey) -> Pubkey:
    pda, _bump = Pubkey.find_program_address([SESSION_SEED, bytes(session_pubkey)], program_id)
    return pda


def delegation_buffer_address(program_id: Pubkey, pda: Pubkey) -> Pubkey:
    # Buffer PDAs live under the owning program, not the delegation program.
    buf, _bump = Pubkey.find_program_address([BUFFER_SEED, bytes(pda)], program_id)
    return buf


def delegation_record_address(delegation_program_id: Pubkey, pda: Pubkey) -> Pubkey:
    rec, _bump = Pubkey.find_program_address([DELEGATION_RECORD_SEED, bytes(pda)], delegation_program_id)
    return rec


def delegation_metadata_address(delegation_program_id: Pubkey, pda: Pubkey) -> Pubkey:
    meta, _bump = Pubkey.find_program_address([DELEGATION_METADATA_SEED, bytes(pda)], delegation_program_id)
    return meta
