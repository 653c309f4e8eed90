"""
Core infrastructure modules for database, job queue, ledger, storage, and utilities.
"""
