from functools import lru_cache
from typing import Dict

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import settings


@lru_cache(maxsize=None)
def get_engine(database_url: str = "") -> Engine:
    return create_engine(database_url or settings.database_url, pool_pre_ping=True)


def fetch_db_info(engine: Engine) -> Dict[str, object]:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1")).scalar()
        entry_counts = conn.execute(
            text(
                "SELECT is_pending, COUNT(*) "
                "FROM media_entries "
                "GROUP BY is_pending"
            )
        ).fetchall()

    counts = {bool(row[0]): int(row[1]) for row in entry_counts}
    return {
        "dialect": engine.dialect.name,
        "visible_entries": counts.get(False, 0),
        "pending_entries": counts.get(True, 0),
    }
