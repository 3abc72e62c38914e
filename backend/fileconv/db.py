"""Database layer for the conversion activity ledger. SQLite by default; set DATABASE_URL for another engine.
Startup ensures the table exists; on connection failure logs verbosely and falls back to in-memory SQLite so the app can start."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from fileconv import config as app_config

logger = logging.getLogger("fileconv.db")

_engine: Optional[Engine] = None

REQUIRED_TABLES = ("conversion_activities",)


def _is_sqlite() -> bool:
    return app_config.DATABASE_URL.startswith("sqlite")


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            # One shared connection, otherwise every pooled connection sees its own empty database
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.split(":///", 1)[-1]).parent.mkdir(parents=True, exist_ok=True)
    return kwargs


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_engine(app_config.DATABASE_URL, **_engine_kwargs(app_config.DATABASE_URL))
        logger.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def _create_tables(conn) -> None:
    id_column = "INTEGER PRIMARY KEY AUTOINCREMENT" if _is_sqlite() else "BIGINT PRIMARY KEY AUTO_INCREMENT"
    conn.execute(text(f"""
        CREATE TABLE IF NOT EXISTS conversion_activities (
            id {id_column},
            session_id VARCHAR(255),
            task_id VARCHAR(64),
            category VARCHAR(16) NOT NULL,
            filename VARCHAR(512),
            target VARCHAR(16) NOT NULL,
            mode VARCHAR(16) NOT NULL,
            status VARCHAR(16) NOT NULL,
            input_bytes BIGINT,
            output_bytes BIGINT,
            duration_seconds FLOAT,
            error TEXT,
            created_at VARCHAR(50) NOT NULL
        )
    """))
    conn.commit()


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to in-memory SQLite so the app can start."""
    global _engine
    try:
        engine = get_engine()
        with engine.connect() as conn:
            _create_tables(conn)
        logger.info("Database ready (tables: %s)", ", ".join(REQUIRED_TABLES))
        return
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database init failed for %s: %s. Using in-memory SQLite.", app_config.DATABASE_URL, e, exc_info=True)

    app_config.DATABASE_URL = "sqlite:///:memory:"
    _engine = None
    with get_engine().connect() as conn:
        _create_tables(conn)
    logger.warning("Database unavailable. Using in-memory SQLite; activity history will not persist across restarts.")


def reset_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_activity(
    session_id: Optional[str],
    category: str,
    filename: str,
    target: str,
    mode: str,
    status: str,
    *,
    task_id: Optional[str] = None,
    input_bytes: Optional[int] = None,
    output_bytes: Optional[int] = None,
    duration_seconds: Optional[float] = None,
    error: Optional[str] = None,
) -> None:
    params = {
        "session_id": session_id,
        "task_id": task_id,
        "category": category,
        "filename": filename,
        "target": target,
        "mode": mode,
        "status": status,
        "input_bytes": input_bytes,
        "output_bytes": output_bytes,
        "duration_seconds": duration_seconds,
        "error": error,
        "created_at": _now_iso(),
    }
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO conversion_activities (session_id, task_id, category, filename, target, mode, status,
                                                   input_bytes, output_bytes, duration_seconds, error, created_at)
                VALUES (:session_id, :task_id, :category, :filename, :target, :mode, :status,
                        :input_bytes, :output_bytes, :duration_seconds, :error, :created_at)
            """),
            params,
        )


def get_session_stats(session_id: str) -> dict:
    """Aggregate stats for a session: conversions, successes, failures, bytes in/out, time spent."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("""
                SELECT
                    COUNT(*) AS conversions,
                    COALESCE(SUM(CASE WHEN status = 'done' THEN 1 ELSE 0 END), 0) AS succeeded,
                    COALESCE(SUM(input_bytes), 0) AS total_input_bytes,
                    COALESCE(SUM(output_bytes), 0) AS total_output_bytes,
                    COALESCE(SUM(duration_seconds), 0) AS time_spent_seconds
                FROM conversion_activities WHERE session_id = :sid
            """),
            {"sid": session_id},
        ).fetchone()
        by_category = conn.execute(
            text("SELECT category, COUNT(*) FROM conversion_activities WHERE session_id = :sid GROUP BY category"),
            {"sid": session_id},
        ).fetchall()
    conversions = int(row[0]) if row else 0
    succeeded = int(row[1]) if row else 0
    return {
        "conversions": conversions,
        "succeeded": succeeded,
        "failed": conversions - succeeded,
        "total_input_bytes": int(row[2]) if row else 0,
        "total_output_bytes": int(row[3]) if row else 0,
        "time_spent_seconds": round(float(row[4]), 3) if row else 0.0,
        "by_category": {r[0]: int(r[1]) for r in by_category},
    }


def get_session_activities(session_id: str, limit: int = 50) -> list[dict]:
    """Recent activities for the session, newest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT task_id, category, filename, target, mode, status, input_bytes, output_bytes,
                       duration_seconds, error, created_at
                FROM conversion_activities WHERE session_id = :sid ORDER BY id DESC LIMIT :lim
            """),
            {"sid": session_id, "lim": limit},
        ).fetchall()
    return [
        {
            "task_id": r[0],
            "category": r[1],
            "filename": r[2],
            "target": r[3],
            "mode": r[4],
            "status": r[5],
            "input_bytes": r[6],
            "output_bytes": r[7],
            "duration_seconds": r[8],
            "error": r[9],
            "created_at": r[10],
        }
        for r in rows
    ]


def delete_session_data(session_id: str) -> int:
    """Delete all activities for the session. Returns the number of rows removed."""
    with session() as conn:
        result = conn.execute(text("DELETE FROM conversion_activities WHERE session_id = :sid"), {"sid": session_id})
    return result.rowcount or 0
