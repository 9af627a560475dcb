"""
Bank Store

Account, ledger entry and transfer storage with a transaction coordinator
that moves money between accounts atomically and deadlock-free under
concurrent access.
"""

__version__ = "1.0.0"
