"""Presale Monitor - fundraising analytics for a single Solana presale address."""

__version__ = "0.1.0"
