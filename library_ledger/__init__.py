"""Library Checkout Ledger - Core Application Package

This package contains the core application modules including:
- Checkout ledger: borrow, return, renew, inventory (ledger.py)
- Deadlock / lock-timeout retry wrapper (retry.py)
- Database layer (database.py)
- Catalog and user directory collaborators (catalog.py, users.py)
- Data models (book.py, checkout.py) and errors (errors.py)
- API endpoints (api.py) and bearer tokens (auth.py)
- CLI interface (main.py)
"""

__version__ = "1.0.0"
