"""
Core modules for Cinegen.

This package contains the generation orchestrator, the batching and retry
helpers it is built on, and the token ledger that gates paid work.
"""
