"""
vidgen
------
Credit-backed video generation dispatch pipeline.

This package contains:
- config: Application configuration
- db: Database connection utilities and schema
- services: Ledger, job store, outbox relay, work queue, worker, credential pool
- worker_main: Long-running dispatch process (relay + worker pool)
"""

__version__ = "0.1.0"
