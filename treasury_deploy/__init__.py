"""
Treasury deployment pipeline for Solana.

Stages: wallet -> provision (Squads multisig) -> issue (SPL asset) -> fund -> verify.
Progress is checkpointed in a JSON deployment record so every stage can be
re-run safely after a partial failure.
"""

__version__ = "0.1.0"
