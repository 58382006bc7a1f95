"""
Webhook API

Entry point for "turn inserted" notifications from the persistence layer.
Delivery is at-least-once; duplicates are filtered by the discussion service.
"""

import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, status
from pydantic import BaseModel, Field

from boardroom.config import settings
from boardroom.services.discussion_service import discussion_service

router = APIRouter()

TURN_TABLE = "turns"


class TurnRecord(BaseModel):
    discussion_id: str
    sequence: int
    speaker_key: Optional[str] = None


class TurnInsertedEvent(BaseModel):
    """Row-change notification"""
    type: str = Field(..., description="INSERT / UPDATE / DELETE")
    table: str = Field(..., description="来源表")
    record: Optional[TurnRecord] = None


@router.post(
    "/turn-inserted",
    summary="发言写入通知",
    description="新发言写入后继续推进讨论；重复或过期的通知会被忽略",
)
async def turn_inserted(
    event: TurnInsertedEvent,
    x_webhook_secret: str = Header(default=""),
) -> Dict[str, Any]:
    if not settings.WEBHOOK_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret is not configured",
        )
    if not secrets.compare_digest(
        x_webhook_secret.encode("utf-8"), settings.WEBHOOK_SECRET.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )

    if event.type.upper() != "INSERT" or event.table != TURN_TABLE or event.record is None:
        return {"status": "ignored", "reason": "unsupported_event"}

    result = await discussion_service.handle_turn_notification(
        event.record.discussion_id,
        event.record.sequence,
    )
    response: Dict[str, Any] = {"status": result["status"]}
    if "reason" in result:
        response["reason"] = result["reason"]
    snapshot = result.get("snapshot")
    if snapshot is not None:
        response["next_speaker"] = snapshot.next_speaker
        response["turn_count"] = len(snapshot.turns)
        response["discussion_status"] = snapshot.discussion.status.value
    return response
