# src/magicplace/ledger/constants.py
"""Canvas geometry and well-known program addresses.

Geometry is fixed by the on-chain program:
- Canvas: 524,288 x 524,288 pixels
- Shard: 90 x 90 pixels, one byte per pixel (0 = transparent)
- Grid: ceil(524288 / 90) = 5826 shards per dimension
"""

from __future__ import annotations

from solders.pubkey import Pubkey

CANVAS_RES: int = 524_288
SHARD_DIMENSION: int = 90
SHARDS_PER_DIM: int = (CANVAS_RES + SHARD_DIMENSION - 1) // SHARD_DIMENSION
PIXELS_PER_SHARD: int = SHARD_DIMENSION * SHARD_DIMENSION

# 0 is reserved for transparent/erased.
MIN_COLOR: int = 1
MAX_COLOR: int = 255

SHARD_SEED: bytes = b"shard"
SESSION_SEED: bytes = b"session"
BUFFER_SEED: bytes = b"buffer"
DELEGATION_RECORD_SEED: bytes = b"delegation"
DELEGATION_METADATA_SEED: bytes = b"delegation-metadata"

ED25519_PROGRAM_ID: Pubkey = Pubkey.from_string("Ed25519SigVerify111111111111111111111111111")
SYSTEM_PROGRAM_ID: Pubkey = Pubkey.from_string("11111111111111111111111111111111")
