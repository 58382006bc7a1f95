"""
讨论会话模型
Discussion Models
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


USER_SPEAKER_KEY = "user"


class DiscussionStatus(str, Enum):
    """讨论状态"""
    ACTIVE = "active"            # 轮流发言中
    COMPLETED = "completed"      # 已结束（终态）


class ParticipantRole(str, Enum):
    """席位角色"""
    MANAGER = "manager"          # 主持人，负责开场与总结
    EXPERT = "expert"            # 专家
    USER = "user"                # 人类用户


class TurnKind(str, Enum):
    """发言类型"""
    REGULAR = "regular"
    SUMMARY = "summary"


def _read_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _parse_rules(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [line.strip() for line in value.split("\n") if line.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if isinstance(item, str) and item.strip()]
    return value


class ModelConfig(BaseModel):
    """Persona 模型配置"""
    provider: Optional[str] = Field(None, description="模型供应商，例如 groq / openai")
    model: Optional[str] = Field(None, description="模型标识")
    temperature: Optional[float] = Field(None, description="采样温度")
    max_tokens: Optional[int] = Field(None, description="最大输出 token")
    top_p: Optional[float] = Field(None, description="top_p")
    stop: Optional[List[str]] = Field(None, description="停止序列")

    @classmethod
    def parse(cls, raw: Any) -> "ModelConfig":
        """Lenient parsing of stored model configuration payloads."""
        if isinstance(raw, ModelConfig):
            return raw
        if not isinstance(raw, dict):
            return cls()

        def _text(key: str) -> Optional[str]:
            value = raw.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            return None

        temperature = _read_number(raw.get("temperature"))
        max_tokens = _read_number(raw.get("max_tokens", raw.get("maxTokens")))
        top_p = _read_number(raw.get("top_p", raw.get("topP")))

        stop_raw = raw.get("stop")
        stop: Optional[List[str]] = None
        if isinstance(stop_raw, str) and stop_raw:
            stop = [stop_raw]
        elif isinstance(stop_raw, list):
            parsed = [str(s).strip() for s in stop_raw if isinstance(s, str) and s.strip()]
            stop = parsed or None

        return cls(
            provider=_text("provider"),
            model=_text("model"),
            temperature=temperature,
            max_tokens=int(max_tokens) if max_tokens is not None else None,
            top_p=top_p,
            stop=stop,
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.provider and self.model)


class Persona(BaseModel):
    """可复用的 Agent 定义"""
    id: str = Field(..., description="Persona ID")
    name: str = Field(..., description="显示名称")
    system_prompt: str = Field(default="", description="系统提示词")
    ai_model_config: ModelConfig = Field(default_factory=ModelConfig, description="模型配置")
    organization_id: Optional[str] = Field(None, description="组织范围")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="创建时间")

    @field_validator("ai_model_config", mode="before")
    @classmethod
    def parse_model_config(cls, v):
        return ModelConfig.parse(v)


class Participant(BaseModel):
    """讨论席位"""
    id: str = Field(..., description="席位ID")
    discussion_id: str = Field(..., description="所属讨论ID")
    role: ParticipantRole = Field(..., description="角色")
    position: int = Field(..., ge=0, description="发言顺序位置 0..N-1")
    persona_id: Optional[str] = Field(None, description="非用户席位绑定的 Persona")

    @property
    def is_user(self) -> bool:
        return self.role == ParticipantRole.USER

    @property
    def key(self) -> str:
        """Speaker key used for speech counting."""
        return USER_SPEAKER_KEY if self.is_user else self.id


class Discussion(BaseModel):
    """讨论实例"""
    id: str = Field(..., description="讨论ID")
    organization_id: Optional[str] = Field(None, description="组织范围")
    name: str = Field(..., description="显示名称")
    status: DiscussionStatus = Field(default=DiscussionStatus.ACTIVE, description="生命周期状态")
    rules: List[str] = Field(default_factory=list, description="规则列表")
    max_rounds: Optional[int] = Field(None, ge=1, le=10, description="轮次上限（为空时使用全局配置）")

    created_at: datetime = Field(default_factory=datetime.utcnow, description="创建时间")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="更新时间")
    completed_at: Optional[datetime] = Field(None, description="完成时间")

    @field_validator("rules", mode="before")
    @classmethod
    def parse_rules(cls, v):
        return _parse_rules(v)

    @property
    def is_completed(self) -> bool:
        return self.status == DiscussionStatus.COMPLETED

    class Config:
        json_schema_extra = {
            "example": {
                "id": "dsc_001",
                "organization_id": "org_001",
                "name": "Fee structure review",
                "status": "active",
                "rules": ["Stay on fee transparency", "No product pitches"],
                "max_rounds": 3,
            }
        }


class Turn(BaseModel):
    """讨论日志条目（只追加）"""
    id: str = Field(..., description="条目ID")
    discussion_id: str = Field(..., description="讨论ID")
    kind: TurnKind = Field(default=TurnKind.REGULAR, description="发言类型")
    sequence: int = Field(..., ge=0, description="全局发言序号")
    seat_index: int = Field(..., description="发言席位位置")
    round_number: int = Field(..., ge=1, description="轮次")

    speaker_key: str = Field(..., description="发言者键")
    speaker_name: str = Field(..., description="发言者名称")
    speaker_role: ParticipantRole = Field(..., description="发言者角色")
    persona_id: Optional[str] = Field(None, description="Persona ID")
    actor_id: Optional[str] = Field(None, description="触发该发言的用户")

    content: str = Field(..., description="发言内容")
    is_fallback: bool = Field(default=False, description="是否为模型失败后的兜底内容")
    model: Dict[str, str] = Field(default_factory=dict, description="使用的模型")

    created_at: datetime = Field(default_factory=datetime.utcnow, description="创建时间")


class TurnCursor(BaseModel):
    """讨论游标（唯一的可变编排状态）"""
    discussion_id: str = Field(..., description="讨论ID")
    turn_index: int = Field(default=0, ge=0, description="当前席位位置")
    round_number: int = Field(default=1, ge=1, description="当前轮次")
    is_active: bool = Field(default=True, description="是否活跃")
    sequence: int = Field(default=0, ge=0, description="下一条发言的序号")
    version: int = Field(default=0, ge=0, description="条件更新版本号")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="更新时间")


class ParticipantView(BaseModel):
    """带 Persona 展示信息的席位"""
    id: str
    role: ParticipantRole
    position: int
    key: str
    name: str
    persona_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None


class DiscussionSnapshot(BaseModel):
    """讨论状态快照"""
    discussion: Discussion
    turns: List[Turn] = Field(default_factory=list)
    speech_counts: Dict[str, int] = Field(default_factory=dict)
    speaker_order: List[str] = Field(default_factory=list)
    next_speaker: Optional[str] = None
    cursor: Optional[TurnCursor] = None
    timed_out: bool = False
    message_recorded: Optional[bool] = None


class PersonaCreate(BaseModel):
    """创建 Persona 请求"""
    name: str = Field(..., min_length=1, description="显示名称")
    system_prompt: str = Field(default="", description="系统提示词")
    ai_model_config: ModelConfig = Field(default_factory=ModelConfig, description="模型配置")
    organization_id: Optional[str] = Field(None, description="组织范围")

    @field_validator("ai_model_config", mode="before")
    @classmethod
    def parse_model_config(cls, v):
        return ModelConfig.parse(v)


class ParticipantCreate(BaseModel):
    """席位定义"""
    role: ParticipantRole = Field(..., description="角色")
    persona_id: Optional[str] = Field(None, description="非用户席位绑定的 Persona")


class DiscussionCreate(BaseModel):
    """创建讨论请求"""
    name: str = Field(..., min_length=1, description="显示名称")
    organization_id: Optional[str] = Field(None, description="组织范围")
    rules: List[str] = Field(default_factory=list, description="规则列表")
    max_rounds: Optional[int] = Field(None, ge=1, le=10, description="轮次上限")
    participants: List[ParticipantCreate] = Field(default_factory=list, description="按发言顺序排列的席位")

    @field_validator("rules", mode="before")
    @classmethod
    def parse_rules(cls, v):
        return _parse_rules(v)
