"""
Engagement Ops Endpoints

GET /v1/engagement/health                      - DB connectivity check.
GET /v1/engagement/users/{user_id}/state       - Current lifecycle state for one user.
GET /v1/engagement/users/{user_id}/transitions - Transition history, newest first.
GET /v1/engagement/stats                       - Transition aggregates over a window.
GET /v1/engagement/outbox/summary              - Outbox row counts by status.

Read-only. All writes go through the state machine and the scheduled tasks.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from core.clock import SystemClock
from core.database import check_db_connection, get_db
from core.exceptions import NotFoundError
from models import EngagementState, QueuedMessage
from services.engagement_state_machine import EngagementStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/engagement", tags=["engagement"])


class HealthResponse(BaseModel):
    status: str
    database: bool


class EngagementStateResponse(BaseModel):
    user_id: str
    state: str
    last_activity_at: datetime
    goodbye_sent_at: Optional[datetime] = None
    goodbye_expires_at: Optional[datetime] = None
    remind_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransitionResponse(BaseModel):
    from_state: Optional[str] = None
    to_state: str
    trigger: str
    metadata: Dict[str, Any] = {}
    created_at: datetime


class TransitionStatsResponse(BaseModel):
    start: datetime
    end: datetime
    total_transitions: int
    transitions_by_trigger: Dict[str, int]
    response_type_distribution: Dict[str, int]
    unprompted_returns: int
    average_days_inactive: int


class OutboxSummaryResponse(BaseModel):
    pending: int = 0
    sending: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0


def get_clock():
    return SystemClock()


@router.get("/health", response_model=HealthResponse)
def engagement_health() -> HealthResponse:
    healthy = check_db_connection()
    return HealthResponse(status="ok" if healthy else "degraded", database=healthy)


@router.get("/users/{user_id}/state", response_model=EngagementStateResponse)
def get_user_state(user_id: str, db: Session = Depends(get_db)) -> EngagementStateResponse:
    row = db.query(EngagementState).filter(EngagementState.user_id == user_id).first()
    if row is None:
        raise NotFoundError("Engagement state", user_id)
    return EngagementStateResponse(
        user_id=row.user_id,
        state=row.state,
        last_activity_at=row.last_activity_at,
        goodbye_sent_at=row.goodbye_sent_at,
        goodbye_expires_at=row.goodbye_expires_at,
        remind_at=row.remind_at,
        updated_at=row.updated_at,
    )


@router.get("/users/{user_id}/transitions", response_model=List[TransitionResponse])
def get_user_transitions(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> List[TransitionResponse]:
    machine = EngagementStateMachine(db)
    return [
        TransitionResponse(
            from_state=row.from_state,
            to_state=row.to_state,
            trigger=row.trigger,
            metadata=row.transition_metadata or {},
            created_at=row.created_at,
        )
        for row in machine.get_user_transition_history(user_id, limit=limit)
    ]


@router.get("/stats", response_model=TransitionStatsResponse)
def get_transition_stats(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
) -> TransitionStatsResponse:
    end = clock.now()
    start = end - timedelta(days=days)
    stats = EngagementStateMachine(db, clock=clock).get_transition_stats(start, end)
    return TransitionStatsResponse(start=start, end=end, **stats)


@router.get("/outbox/summary", response_model=OutboxSummaryResponse)
def get_outbox_summary(db: Session = Depends(get_db)) -> OutboxSummaryResponse:
    rows = (
        db.query(QueuedMessage.status, func.count(QueuedMessage.id))
        .group_by(QueuedMessage.status)
        .all()
    )
    return OutboxSummaryResponse(**{status_name: count for status_name, count in rows})
