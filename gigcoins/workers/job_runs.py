"""Job run bookkeeping shared by the maintenance workers."""
import json
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import select, insert

from gigcoins.core.database import get_db_session, billing_job_runs, utc_now, as_utc


def record_job_run(job_name: str, started_at: datetime, status: str, stats: Dict[str, Any]) -> None:
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=job_name,
                started_at=started_at,
                finished_at=utc_now(),
                status=status,
                stats_json=json.dumps(stats, default=str),
            )
        )


def recent_job_runs(job_name: str, limit: int = 10) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(billing_job_runs)
            .where(billing_job_runs.c.job_name == job_name)
            .order_by(billing_job_runs.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [
        {
            "job_name": row.job_name,
            "started_at": as_utc(row.started_at),
            "finished_at": as_utc(row.finished_at),
            "status": row.status,
            "stats": json.loads(row.stats_json) if row.stats_json else {},
        }
        for row in rows
    ]
