"""Fastest-time leaderboard for an event."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from sqlmodel import Session, select

from .database import PlayerScore
from .errors import ValidationError

LEADERBOARD_LIMIT = 10


def rank_scores(records: Iterable[Mapping[str, Any]], limit: int = LEADERBOARD_LIMIT) -> list[dict[str, Any]]:
    """Return the ``limit`` fastest entries, ascending by time, earliest submission first on ties."""
    ordered = sorted(records, key=lambda record: (record["time_ms"], record.get("created_at") or ""))
    return [dict(record) for record in ordered[:limit]]


def score_payload(score: PlayerScore) -> dict[str, Any]:
    return {
        "id": score.id,
        "name": score.name,
        "time_ms": score.time_ms,
        "created_at": score.created_at.isoformat(),
    }


def leaderboard_query(event_id: str, limit: int = LEADERBOARD_LIMIT):
    def query(session: Session) -> list[dict[str, Any]]:
        rows = session.exec(
            select(PlayerScore)
            .where(PlayerScore.event_id == event_id)
            .order_by(PlayerScore.time_ms.asc(), PlayerScore.created_at.asc())
            .limit(limit)
        ).all()
        return [score_payload(row) for row in rows]

    return query


def submit_score(session: Session, event_id: str, name: str | None, time_ms: int | None) -> PlayerScore:
    cleaned = name.strip() if isinstance(name, str) else ""
    if not cleaned:
        raise ValidationError("Please enter a name.")
    if time_ms is None or time_ms < 0:
        raise ValidationError("Finish a game before submitting a score.")

    score = PlayerScore(event_id=event_id, name=cleaned, time_ms=int(time_ms))
    session.add(score)
    session.commit()
    session.refresh(score)
    return score
