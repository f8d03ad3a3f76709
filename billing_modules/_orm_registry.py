"""
Module ORM Registry (``billing_modules._orm_registry``).

Ensures every module ORM model is imported so that ``Base.metadata``
contains all table definitions before ``create_tables()`` runs.
"""


def import_all_orm_models() -> None:
    """Import kernel tables and every ``billing_modules.*.orm`` module.

    Idempotent -- repeated calls are harmless.
    """
    import billing_kernel.services.sequence_service  # noqa: F401
    # fmt: off
    import billing_modules.catalog.orm  # noqa: F401
    import billing_modules.invoicing.orm  # noqa: F401
    import billing_modules.subscriptions.orm  # noqa: F401
    # fmt: on
