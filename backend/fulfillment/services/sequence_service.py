# Overview: Service-layer operations for per-store counters used in session codes and order numbers.

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import SessionSequence


def next_sequence_number(*, store_id: int, prefix: str, date_part: str = "") -> int:
    """
    Atomically allocate the next number for (store_id, prefix, date_part).

    No commit and no retry: runs inside the caller's unit of work. The
    UPDATE ... SET next_number = next_number + 1 serializes writers on the
    counter row. When the row does not exist yet, two concurrent first
    allocations collide on the unique constraint; the loser's IntegrityError
    propagates and the caller's run_with_retry(retry_on=(IntegrityError,))
    replays the unit of work, which then takes the UPDATE path.
    """
    stmt = (
        update(SessionSequence)
        .where(
            SessionSequence.store_id == store_id,
            SessionSequence.prefix == prefix,
            SessionSequence.date_part == date_part,
        )
        .values(next_number=SessionSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(SessionSequence.next_number)
            .filter_by(store_id=store_id, prefix=prefix, date_part=date_part)
            .scalar()
        )
        return current - 1

    db.session.add(SessionSequence(store_id=store_id, prefix=prefix, date_part=date_part, next_number=2))
    db.session.flush()
    return 1


def format_session_code(prefix: str, date_part: str, number: int) -> str:
    """PREP-17102026-01; the sequence widens to 3+ digits from 100."""
    return f"{prefix}-{date_part}-{number:02d}"
