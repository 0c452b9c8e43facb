"""Database helpers and scout-queue operations.

Every state transition is a conditional UPDATE keyed on the status (and, for
repairs, the ``in_progress_at`` value that was read), so several bot instances
can share one queue without an application-level lock.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import create_engine, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import DATABASE_URL
from database.models import (
    STATUS_BUYING,
    STATUS_PENDING,
    STATUS_SKIPPED,
    TERMINAL_STATUSES,
    Base,
    ScoutQueueItem,
    utcnow,
)

engine = create_engine(DATABASE_URL, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class StaleClaim:
    mint: str
    symbol: Optional[str]
    buy_attempts: int
    in_progress_at: datetime


@dataclass(frozen=True)
class ClaimedItem:
    mint: str
    symbol: Optional[str]
    buy_attempts: int
    in_progress_at: datetime


def init_db(bind: Engine | None = None) -> None:
    Base.metadata.create_all(bind=bind or engine)


def get_db(session_factory: SessionFactory | None = None) -> Session:
    return (session_factory or SessionLocal)()


def _append_audit(note: str):
    return func.coalesce(ScoutQueueItem.audit_trail, "") + f"{note}\n"


def enqueue_scout(mint: str, symbol: str | None, *, session_factory: SessionFactory | None = None) -> bool:
    db = get_db(session_factory)
    try:
        existing = db.query(ScoutQueueItem).filter(ScoutQueueItem.mint == mint).first()
        if existing:
            return False
        db.add(ScoutQueueItem(mint=mint, symbol=symbol, status=STATUS_PENDING, buy_attempts=0, audit_trail=""))
        db.commit()
        return True
    finally:
        db.close()


def claim_next_pending(
    now: datetime | None = None,
    *,
    session_factory: SessionFactory | None = None,
) -> Optional[ClaimedItem]:
    """Move the oldest due PENDING row to BUYING. Returns None when nothing is due or another claimer won."""
    now = now or utcnow()
    db = get_db(session_factory)
    try:
        row = (
            db.query(ScoutQueueItem)
            .filter(
                ScoutQueueItem.status == STATUS_PENDING,
                (ScoutQueueItem.next_attempt_at.is_(None)) | (ScoutQueueItem.next_attempt_at <= now),
            )
            .order_by(ScoutQueueItem.queued_at.asc())
            .first()
        )
        if row is None:
            return None
        claimed = ClaimedItem(mint=row.mint, symbol=row.symbol, buy_attempts=int(row.buy_attempts or 0), in_progress_at=now)
        updated = (
            db.query(ScoutQueueItem)
            .filter(ScoutQueueItem.id == row.id, ScoutQueueItem.status == STATUS_PENDING)
            .update(
                {
                    ScoutQueueItem.status: STATUS_BUYING,
                    ScoutQueueItem.in_progress_at: now,
                    ScoutQueueItem.last_attempt_at: now,
                    ScoutQueueItem.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return claimed if updated == 1 else None
    finally:
        db.close()


def update_claim_status(
    claim: ClaimedItem,
    status: str,
    error: str | None = None,
    tx_sig: str | None = None,
    *,
    session_factory: SessionFactory | None = None,
) -> bool:
    """Record the outcome of a claim this process still owns.

    Returns False when the row was reset or re-claimed since ``claim`` was taken;
    the newer owner's state is left untouched.
    """
    values = {
        ScoutQueueItem.status: status,
        ScoutQueueItem.last_error: error,
        ScoutQueueItem.updated_at: utcnow(),
    }
    if tx_sig is not None:
        values[ScoutQueueItem.tx_sig] = tx_sig
    if status in TERMINAL_STATUSES:
        values[ScoutQueueItem.in_progress_at] = None
    if error:
        values[ScoutQueueItem.audit_trail] = _append_audit(error)
    return _conditional_claim_update(claim, values, session_factory)


def select_stale_buying(cutoff: datetime, *, session_factory: SessionFactory | None = None) -> list[StaleClaim]:
    db = get_db(session_factory)
    try:
        rows = (
            db.query(ScoutQueueItem)
            .filter(
                ScoutQueueItem.status == STATUS_BUYING,
                ScoutQueueItem.tx_sig.is_(None),
                ScoutQueueItem.in_progress_at.is_not(None),
                ScoutQueueItem.in_progress_at < cutoff,
            )
            .order_by(ScoutQueueItem.in_progress_at.asc())
            .all()
        )
        return [
            StaleClaim(
                mint=row.mint,
                symbol=row.symbol,
                buy_attempts=int(row.buy_attempts or 0),
                in_progress_at=row.in_progress_at,
            )
            for row in rows
        ]
    finally:
        db.close()


def _conditional_claim_update(claim: StaleClaim | ClaimedItem, values: dict, session_factory: SessionFactory | None) -> bool:
    db = get_db(session_factory)
    try:
        updated = (
            db.query(ScoutQueueItem)
            .filter(
                ScoutQueueItem.mint == claim.mint,
                ScoutQueueItem.status == STATUS_BUYING,
                ScoutQueueItem.in_progress_at == claim.in_progress_at,
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
        return updated == 1
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def reset_claim_to_pending(
    claim: StaleClaim,
    next_attempt_at: datetime,
    annotation: str,
    *,
    now: datetime | None = None,
    session_factory: SessionFactory | None = None,
) -> bool:
    values = {
        ScoutQueueItem.status: STATUS_PENDING,
        ScoutQueueItem.buy_attempts: ScoutQueueItem.buy_attempts + 1,
        ScoutQueueItem.in_progress_at: None,
        ScoutQueueItem.next_attempt_at: next_attempt_at,
        ScoutQueueItem.last_error: annotation,
        ScoutQueueItem.audit_trail: _append_audit(annotation),
        ScoutQueueItem.updated_at: now or utcnow(),
    }
    return _conditional_claim_update(claim, values, session_factory)


def mark_claim_skipped(
    claim: StaleClaim,
    annotation: str,
    *,
    now: datetime | None = None,
    session_factory: SessionFactory | None = None,
) -> bool:
    values = {
        ScoutQueueItem.status: STATUS_SKIPPED,
        ScoutQueueItem.in_progress_at: None,
        ScoutQueueItem.next_attempt_at: None,
        ScoutQueueItem.last_error: annotation,
        ScoutQueueItem.audit_trail: _append_audit(annotation),
        ScoutQueueItem.updated_at: now or utcnow(),
    }
    return _conditional_claim_update(claim, values, session_factory)


def get_queue_item(mint: str, *, session_factory: SessionFactory | None = None) -> Optional[ScoutQueueItem]:
    db = get_db(session_factory)
    try:
        return db.query(ScoutQueueItem).filter(ScoutQueueItem.mint == mint).first()
    finally:
        db.close()


def queue_health(now: datetime | None = None, *, session_factory: SessionFactory | None = None) -> dict:
    now = now or utcnow()
    db = get_db(session_factory)
    try:
        by_status = {
            str(status): int(count)
            for status, count in db.query(ScoutQueueItem.status, func.count(ScoutQueueItem.id))
            .group_by(ScoutQueueItem.status)
            .all()
        }
        oldest_pending = (
            db.query(func.min(ScoutQueueItem.queued_at)).filter(ScoutQueueItem.status == STATUS_PENDING).scalar()
        )
        oldest_buying = (
            db.query(func.min(ScoutQueueItem.in_progress_at)).filter(ScoutQueueItem.status == STATUS_BUYING).scalar()
        )
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "oldest_pending_age_min": round((now - oldest_pending).total_seconds() / 60.0, 2) if oldest_pending else None,
            "oldest_in_progress_age_min": round((now - oldest_buying).total_seconds() / 60.0, 2) if oldest_buying else None,
        }
    finally:
        db.close()
