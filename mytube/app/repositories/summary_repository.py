from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from mytube.app.repositories.database import Database


@dataclass(frozen=True)
class CachedSummary:
    video_id: str
    mode: str
    summary: str
    created_at: str


class SummaryRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, *, video_id: str, mode: str) -> CachedSummary | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT video_id, mode, summary, created_at
                FROM video_summaries
                WHERE video_id = ? AND mode = ?
                """,
                (video_id, mode),
            ).fetchone()
        if row is None:
            return None
        return CachedSummary(
            video_id=str(row["video_id"]),
            mode=str(row["mode"]),
            summary=str(row["summary"]),
            created_at=str(row["created_at"]),
        )

    def put(self, *, video_id: str, mode: str, summary: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO video_summaries (video_id, mode, summary, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(video_id, mode) DO UPDATE SET
                    summary = excluded.summary,
                    created_at = excluded.created_at
                """,
                (video_id, mode, summary, datetime.now(UTC).isoformat()),
            )
