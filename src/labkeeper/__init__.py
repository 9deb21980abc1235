"""Provision AWS lab resources and track them in a remote ledger for reliable cleanup."""

__version__ = "0.1.0"
