"""
语言模型后端
Language-model backend

The engine only needs "generate text given a system instruction and a
conversation". Provider selection and fallback live here, not in the engine.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from boardroom.config import Settings, settings as default_settings
from boardroom.core.exceptions import BackendFailureError, LLMConfigurationError
from boardroom.models.discussion import ModelConfig

logger = structlog.get_logger()

SUPPORTED_PROVIDERS = ("groq", "openai")


@dataclass
class ResolvedModel:
    provider: str
    model: str
    api_key: str
    base_url: Optional[str] = None
    temperature: float = 0.2
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[List[str]] = None
    fallback_used: bool = False

    @property
    def descriptor(self) -> Dict[str, str]:
        return {"provider": self.provider, "model": self.model}


def resolve_model(config: ModelConfig, cfg: Optional[Settings] = None) -> ResolvedModel:
    """Pick the provider/model for a persona.

    The persona's own provider wins when it is supported and has credentials;
    otherwise the default provider (then any other configured provider) is used
    with its default model. No credentials anywhere is fatal.
    """
    cfg = cfg or default_settings
    keys = cfg.provider_api_keys
    requested = (config.provider or "").strip().lower()

    provider: Optional[str] = None
    model: Optional[str] = None
    fallback_used = False
    if config.is_complete and requested in SUPPORTED_PROVIDERS and keys.get(requested):
        provider = requested
        model = config.model
    else:
        candidates = [cfg.LLM_DEFAULT_PROVIDER] + [
            p for p in SUPPORTED_PROVIDERS if p != cfg.LLM_DEFAULT_PROVIDER
        ]
        for candidate in candidates:
            if candidate in SUPPORTED_PROVIDERS and keys.get(candidate):
                provider = candidate
                model = cfg.provider_default_models[candidate]
                fallback_used = True
                break

    if not provider or not model:
        raise LLMConfigurationError(
            "No LLM provider available. Set GROQ_API_KEY or OPENAI_API_KEY."
        )

    if fallback_used:
        logger.info(
            "llm_model_fallback_selected",
            requested_provider=requested or None,
            requested_model=config.model,
            provider=provider,
            model=model,
        )

    return ResolvedModel(
        provider=provider,
        model=model,
        api_key=str(keys[provider]),
        base_url=cfg.provider_base_urls.get(provider),
        temperature=(
            config.temperature if config.temperature is not None else cfg.LLM_DEFAULT_TEMPERATURE
        ),
        max_tokens=config.max_tokens,
        top_p=config.top_p,
        stop=config.stop,
        fallback_used=fallback_used,
    )


def _is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return True
    normalized = f"{exc.__class__.__name__} {exc}".lower()
    return any(
        marker in normalized
        for marker in ("429", "rate limit", "ratelimit", "timeout", "timed out", "connection", "503", "overloaded")
    )


def extract_reply_text(reply: Any) -> str:
    content = getattr(reply, "content", reply)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                texts.append(str(part.get("text") or ""))
        return "\n".join(t for t in texts if t.strip()).strip()
    if content is None:
        return ""
    return str(content).strip()


class LLMBackend(ABC):
    """complete(system_instruction, conversation, model_config) -> text"""

    @abstractmethod
    async def complete(
        self,
        system_instruction: str,
        conversation: str,
        model_config: ModelConfig,
    ) -> str:
        pass

    def describe(self, model_config: ModelConfig) -> Dict[str, str]:
        return {
            "provider": model_config.provider or "",
            "model": model_config.model or "",
        }


ChatModelFactory = Callable[[ResolvedModel], BaseChatModel]


def _default_chat_model_factory(resolved: ResolvedModel) -> BaseChatModel:
    kwargs: Dict[str, Any] = {
        "model": resolved.model,
        "api_key": resolved.api_key,
        "temperature": resolved.temperature,
        "timeout": default_settings.LLM_TIMEOUT,
        "max_retries": 0,
    }
    if resolved.base_url:
        kwargs["base_url"] = resolved.base_url
    if resolved.max_tokens:
        kwargs["max_tokens"] = resolved.max_tokens
    if resolved.top_p is not None:
        kwargs["top_p"] = resolved.top_p
    return ChatOpenAI(**kwargs)


@dataclass
class ChatModelBackend(LLMBackend):
    """OpenAI-compatible chat backend (Groq and OpenAI) with tenacity retries."""

    cfg: Settings = field(default_factory=lambda: default_settings)
    chat_model_factory: ChatModelFactory = _default_chat_model_factory

    def describe(self, model_config: ModelConfig) -> Dict[str, str]:
        try:
            return resolve_model(model_config, self.cfg).descriptor
        except LLMConfigurationError:
            return super().describe(model_config)

    async def complete(
        self,
        system_instruction: str,
        conversation: str,
        model_config: ModelConfig,
    ) -> str:
        resolved = resolve_model(model_config, self.cfg)
        llm = self.chat_model_factory(resolved)
        messages: List[BaseMessage] = [
            SystemMessage(content=system_instruction),
            HumanMessage(content=conversation),
        ]
        invoke_kwargs: Dict[str, Any] = {}
        if resolved.stop:
            invoke_kwargs["stop"] = list(resolved.stop)

        started = perf_counter()
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(1 + max(0, int(self.cfg.LLM_MAX_RETRIES))),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                retry=retry_if_exception(_is_transient_error),
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    reply = await asyncio.wait_for(
                        llm.ainvoke(messages, **invoke_kwargs),
                        timeout=float(self.cfg.LLM_TIMEOUT),
                    )
        except Exception as exc:
            raise BackendFailureError(
                f"{resolved.provider}/{resolved.model} failed after {attempts} attempt(s): {exc}"
            ) from exc
        text = extract_reply_text(reply)
        logger.info(
            "llm_call_completed",
            provider=resolved.provider,
            model=resolved.model,
            attempts=attempts,
            latency_ms=int((perf_counter() - started) * 1000),
            response_length=len(text),
        )
        return text


llm_backend = ChatModelBackend()
