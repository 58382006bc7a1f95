"""
API 路由汇总
API Router Aggregation
"""

from fastapi import APIRouter

from boardroom.api import discussions, personas, webhooks

api_router = APIRouter()

# 注册各模块路由
api_router.include_router(
    personas.router,
    prefix="/personas",
    tags=["Personas"],
)

api_router.include_router(
    discussions.router,
    prefix="/discussions",
    tags=["Discussions"],
)

api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["Webhooks"],
)
