"""Encrypted family document vault: sealed items, wrapped vault keys, legacy access."""

__version__ = "0.1.0"
