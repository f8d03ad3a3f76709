"""
Document numbering.

``SUB-000001`` and ``INV-000001`` come from named rows in
``sequence_counters``, read with ``SELECT ... FOR UPDATE`` and incremented
in the caller's transaction.  Two checkouts racing for a number queue on
the row lock; nothing ever counts existing documents and adds one.
Quotations use ``timestamp_document_number`` instead: base-36 milliseconds.
"""

from datetime import datetime

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


def format_document_number(prefix: str, value: int) -> str:
    """``format_document_number("INV", 7) == "INV-000007"``."""
    return f"{prefix}-{value:06d}"


def to_base36(value: int) -> str:
    """Uppercase base-36 rendering of a non-negative integer."""
    if value < 0:
        raise ValueError("base36 value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def timestamp_document_number(prefix: str, at: datetime) -> str:
    """Number derived from a millisecond timestamp, e.g. ``SUB-M5XK2Q8W``."""
    return f"{prefix}-{to_base36(int(at.timestamp() * 1000))}"


class SequenceService:
    """
    Named counters that hand out document numbers inside the caller's
    transaction.  A rolled-back transaction gives its number back.

        number = SequenceService(session).next_number(SequenceService.INVOICE, "INV")
    """

    SUBSCRIPTION = "subscription"
    INVOICE = "invoice"

    def __init__(self, session: Session):
        self._session = session

    def _counter(self, name: str, lock: bool = True) -> SequenceCounter | None:
        stmt = select(SequenceCounter).where(SequenceCounter.name == name)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def _create_counter(self, name: str) -> SequenceCounter | None:
        """Insert the counter at 0.  None when a concurrent request inserted it first."""
        savepoint = self._session.begin_nested()
        try:
            counter = SequenceCounter(name=name, current_value=0)
            self._session.add(counter)
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_created_concurrently", extra={"sequence_name": name})
            return None
        savepoint.commit()
        return counter

    def next_value(self, sequence_name: str) -> int:
        """
        Increment and return the counter.  The row stays locked until the
        caller's transaction ends, so concurrent callers never share a value.
        """
        counter = self._counter(sequence_name)
        if counter is None:
            counter = self._create_counter(sequence_name) or self._counter(sequence_name)
            if counter is None:
                raise RuntimeError(f"Sequence counter {sequence_name!r} could not be created")

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def next_number(self, sequence_name: str, prefix: str) -> str:
        return format_document_number(prefix, self.next_value(sequence_name))

    def current_value(self, sequence_name: str) -> int | None:
        """Last value handed out, without allocating; None for an unused sequence."""
        counter = self._counter(sequence_name, lock=False)
        return None if counter is None else counter.current_value

    def reset(self, sequence_name: str, value: int = 0) -> None:
        """Set a counter outright (data migrations and tests)."""
        counter = (
            self._counter(sequence_name)
            or self._create_counter(sequence_name)
            or self._counter(sequence_name)
        )
        counter.current_value = value
        self._session.flush()
