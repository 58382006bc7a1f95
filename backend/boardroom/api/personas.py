"""
Persona API
"""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from boardroom.models.discussion import Persona, PersonaCreate
from boardroom.services.persona_service import persona_service

router = APIRouter()


@router.post(
    "/",
    response_model=Persona,
    status_code=status.HTTP_201_CREATED,
    summary="创建 Persona",
)
async def create_persona(payload: PersonaCreate):
    return await persona_service.create_persona(payload)


@router.get(
    "/",
    response_model=List[Persona],
    summary="获取 Persona 列表",
)
async def list_personas(
    organization_id: Optional[str] = Query(None, description="按组织筛选"),
):
    return await persona_service.list_personas(organization_id=organization_id)


@router.get(
    "/{persona_id}",
    response_model=Persona,
    summary="获取 Persona 详情",
)
async def get_persona(persona_id: str):
    persona = await persona_service.get_persona(persona_id)
    if not persona:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Persona {persona_id} not found",
        )
    return persona
