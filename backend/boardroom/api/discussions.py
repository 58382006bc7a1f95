"""
讨论 API
Discussion API Endpoints

Engine errors (not found, invalid state, busy, ...) are raised as
``DiscussionError`` and mapped to HTTP responses by the handler in ``main``.
"""

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from boardroom.models.discussion import (
    DiscussionCreate,
    DiscussionSnapshot,
    DiscussionStatus,
    ParticipantView,
    Turn,
)
from boardroom.services.discussion_service import discussion_service

router = APIRouter()


# ==================== API 数据模型 ====================

class DiscussionResponse(BaseModel):
    """讨论响应"""
    id: str
    organization_id: Optional[str]
    name: str
    status: DiscussionStatus
    rules: List[str]
    max_rounds: Optional[int]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DiscussionListResponse(BaseModel):
    """讨论列表响应"""
    items: List[DiscussionResponse]
    total: int
    page: int
    page_size: int


class DiscussionStateResponse(BaseModel):
    """讨论状态快照"""
    discussion: DiscussionResponse
    turns: List[Turn]
    speech_counts: Dict[str, int]
    speaker_order: List[str]
    next_speaker: Optional[str]
    current_round: int
    is_active: bool
    timed_out: bool = False
    message_recorded: Optional[bool] = None


class AdvanceRequest(BaseModel):
    """推进请求"""
    message: str = Field(..., min_length=1, description="用户发言")
    actor_id: str = Field(..., min_length=1, description="发言用户ID")
    timeout: Optional[float] = Field(None, gt=0, le=300, description="本次推进的时间预算（秒）")


class ResumeRequest(BaseModel):
    """继续推进请求"""
    timeout: Optional[float] = Field(None, gt=0, le=300, description="本次推进的时间预算（秒）")


# ==================== API 端点 ====================

@router.post(
    "/",
    response_model=DiscussionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="创建讨论",
    description="按发言顺序创建席位并初始化游标",
)
async def create_discussion(payload: DiscussionCreate):
    discussion = await discussion_service.create_discussion(payload)
    return DiscussionResponse.model_validate(discussion)


@router.get(
    "/",
    response_model=DiscussionListResponse,
    summary="获取讨论列表",
)
async def list_discussions(
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=100, description="每页数量"),
    organization_id: Optional[str] = Query(None, description="按组织筛选"),
    status: Optional[DiscussionStatus] = Query(None, description="按状态筛选"),
):
    result = await discussion_service.list_discussions(
        organization_id=organization_id,
        status=status,
        page=page,
        page_size=page_size,
    )
    return DiscussionListResponse(
        items=[DiscussionResponse.model_validate(item) for item in result["items"]],
        total=result["total"],
        page=result["page"],
        page_size=result["page_size"],
    )


@router.get(
    "/{discussion_id}",
    response_model=DiscussionStateResponse,
    summary="获取讨论状态",
    description="只读快照：发言记录、发言次数、发言顺序与下一位发言者",
)
async def get_discussion_state(discussion_id: str):
    snapshot = await discussion_service.get_state(discussion_id)
    return _build_state_response(snapshot)


@router.post(
    "/{discussion_id}/advance",
    response_model=DiscussionStateResponse,
    summary="推进讨论",
    description="记录用户发言，然后由各 Agent 依次发言直到再次轮到用户",
)
async def advance_discussion(discussion_id: str, payload: AdvanceRequest):
    snapshot = await discussion_service.advance(
        discussion_id,
        payload.message,
        payload.actor_id,
        timeout=payload.timeout,
    )
    return _build_state_response(snapshot)


@router.post(
    "/{discussion_id}/resume",
    response_model=DiscussionStateResponse,
    summary="继续推进讨论",
    description="不记录新发言，从游标处继续让 Agent 发言（用于超时后的续跑）",
)
async def resume_discussion(discussion_id: str, payload: Optional[ResumeRequest] = None):
    snapshot = await discussion_service.resume(
        discussion_id,
        timeout=payload.timeout if payload else None,
    )
    return _build_state_response(snapshot)


@router.get(
    "/{discussion_id}/participants",
    response_model=List[ParticipantView],
    summary="获取讨论席位",
)
async def list_participants(discussion_id: str):
    return await discussion_service.list_participant_views(discussion_id)


def _build_state_response(snapshot: DiscussionSnapshot) -> DiscussionStateResponse:
    cursor = snapshot.cursor
    return DiscussionStateResponse(
        discussion=DiscussionResponse.model_validate(snapshot.discussion),
        turns=snapshot.turns,
        speech_counts=snapshot.speech_counts,
        speaker_order=snapshot.speaker_order,
        next_speaker=snapshot.next_speaker,
        current_round=cursor.round_number if cursor else 1,
        is_active=bool(cursor and cursor.is_active),
        timed_out=snapshot.timed_out,
        message_recorded=snapshot.message_recorded,
    )
