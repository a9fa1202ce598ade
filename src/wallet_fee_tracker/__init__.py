"""Checkpointed ERC-20 transfer ingestion and exact ledger for a fee wallet."""

__version__ = "0.1.0"
