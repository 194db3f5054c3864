"""
Per-session event log.

Provides dual output: database entries for structured queries and file logs for backup.
Each client session gets its own log file in {log_dir}/{session_id}.log with rotation.
"""

import logging
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from scriptclient.database import SessionLocal
from scriptclient.models import SessionEvent

logger = logging.getLogger(__name__)

LOG_DIR = Path("data/logs")

# Per-session file loggers (cached)
_session_file_loggers: dict = {}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def set_log_dir(path) -> None:
    global LOG_DIR
    LOG_DIR = Path(path)


def _file_name(session_id: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in session_id) + ".log"


def _get_file_logger(session_id: str) -> logging.Logger:
    """Get or create a file logger for a specific session."""
    if session_id in _session_file_loggers:
        return _session_file_loggers[session_id]

    session_logger = logging.getLogger(f"session.{session_id}")
    session_logger.setLevel(logging.DEBUG)

    if not session_logger.handlers:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOG_DIR / _file_name(session_id),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
            encoding="utf-8"
        )
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(category)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        session_logger.addHandler(handler)
        session_logger.propagate = False

    _session_file_loggers[session_id] = session_logger
    return session_logger


def close_session_log(session_id: str) -> None:
    """Release the file handler of a finished session."""
    session_logger = _session_file_loggers.pop(session_id, None)
    if session_logger is None:
        return
    for handler in list(session_logger.handlers):
        session_logger.removeHandler(handler)
        handler.close()


def log_session_event(
    session_id: str,
    level: str,
    category: str,
    message: str,
    db: Optional[Session] = None
):
    """
    Log an event for a client session.

    Writes to both:
    1. Database (SessionEvent table) for structured queries
    2. File ({log_dir}/{session_id}.log) for backup/debugging

    Args:
        session_id: Session identifier
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        category: Event category (STATE, TCP, TLS, PAYLOAD, CONSOLE, SIGNAL)
        message: Log message
        db: Optional database session (creates one if not provided)
    """
    timestamp = _utcnow()

    try:
        file_logger = _get_file_logger(session_id)
        log_func = getattr(file_logger, level.lower(), file_logger.info)
        log_func(message, extra={"category": category.upper()})
    except Exception as e:
        logger.warning(f"Failed to write file log for {session_id}: {e}")

    close_db = False
    try:
        if db is None:
            db = SessionLocal()
            close_db = True

        db.add(SessionEvent(
            session_id=session_id,
            timestamp=timestamp,
            level=level.upper(),
            category=category.upper(),
            message=message
        ))
        db.commit()

    except Exception as e:
        logger.warning(f"Failed to write DB log for {session_id}: {e}")
        if db:
            db.rollback()
    finally:
        if close_db and db:
            db.close()


def cleanup_old_events(retention_days: int, db: Optional[Session] = None) -> int:
    """Delete events older than `retention_days`. Returns the number of deleted rows."""
    cutoff = _utcnow() - timedelta(days=retention_days)

    close_db = False
    deleted = 0
    try:
        if db is None:
            db = SessionLocal()
            close_db = True

        deleted = db.query(SessionEvent).filter(SessionEvent.timestamp < cutoff).delete()
        db.commit()

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} session events older than {retention_days} days")

    except Exception as e:
        logger.error(f"Failed to cleanup old session events: {e}")
        if db:
            db.rollback()
    finally:
        if close_db and db:
            db.close()
    return deleted


def get_session_events(
    session_id: str,
    limit: int = 100,
    offset: int = 0,
    level: Optional[str] = None,
    category: Optional[str] = None,
    since: Optional[datetime] = None,
    db: Optional[Session] = None
) -> list:
    """
    Query events of a session, oldest first.

    Returns:
        List of events as dicts
    """
    close_db = False
    try:
        if db is None:
            db = SessionLocal()
            close_db = True

        query = db.query(SessionEvent).filter(SessionEvent.session_id == session_id)

        if level:
            query = query.filter(SessionEvent.level == level.upper())
        if category:
            query = query.filter(SessionEvent.category == category.upper())
        if since:
            query = query.filter(SessionEvent.timestamp >= since)

        entries = query.order_by(SessionEvent.id.asc()).offset(offset).limit(limit).all()

        return [
            {
                "id": e.id,
                "timestamp": e.timestamp.isoformat() + "Z",
                "level": e.level,
                "category": e.category,
                "message": e.message
            }
            for e in entries
        ]

    finally:
        if close_db and db:
            db.close()


def get_event_stats(session_id: str, db: Optional[Session] = None) -> dict:
    """Counts by level and category plus first/last timestamps for a session."""
    close_db = False
    try:
        if db is None:
            db = SessionLocal()
            close_db = True

        base = db.query(SessionEvent).filter(SessionEvent.session_id == session_id)

        by_level = dict(
            base.with_entities(SessionEvent.level, func.count(SessionEvent.id))
            .group_by(SessionEvent.level)
            .all()
        )
        by_category = dict(
            base.with_entities(SessionEvent.category, func.count(SessionEvent.id))
            .group_by(SessionEvent.category)
            .all()
        )
        oldest, newest = base.with_entities(
            func.min(SessionEvent.timestamp), func.max(SessionEvent.timestamp)
        ).one()

        return {
            "total": sum(by_level.values()),
            "by_level": by_level,
            "by_category": by_category,
            "oldest": oldest.isoformat() + "Z" if oldest else None,
            "newest": newest.isoformat() + "Z" if newest else None
        }

    finally:
        if close_db and db:
            db.close()
