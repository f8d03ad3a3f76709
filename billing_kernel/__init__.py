"""
Billing Kernel

Shared foundation for the subscription billing core:
- Typed exceptions with stable reason codes
- Structured JSON logging
- Injectable clock and Decimal money values
- SQLAlchemy base classes, engine and sequence counters
"""

__version__ = "0.1.0"
