"""Client protocol for the Magicplace shared canvas (session keys, shard delegation, cooldown)."""

__version__ = "0.1.0"
