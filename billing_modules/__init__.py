"""
Billing modules: catalog, discounts, tax, invoicing and subscriptions.

Each module keeps its frozen DTOs in ``models.py``, its SQLAlchemy tables in
``orm.py``, state machines in ``workflows.py`` and session-bound operations
in ``service.py``.
"""
