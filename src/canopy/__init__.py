"""Canopy — nested communities with inherited, per-node access control."""

__version__ = "0.1.0"
