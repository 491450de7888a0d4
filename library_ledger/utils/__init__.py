"""Library Checkout Ledger - Utilities Package

- Range validators for day counts, ids and pagination (validators.py)
- CLI output helpers (ui_helpers.py)
"""
