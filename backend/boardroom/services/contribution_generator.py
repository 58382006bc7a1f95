"""Contribution generator.

Builds the instruction block for the next speaker, calls the language-model
backend with the recent discussion window and normalizes the reply to a fixed
maximum line count.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from boardroom.config import settings
from boardroom.core.exceptions import LLMConfigurationError
from boardroom.core.llm_client import LLMBackend
from boardroom.models.discussion import Persona, Turn

logger = structlog.get_logger()

FILLER_TEXT = "Brief point follows in the next round."
SUMMARY_FILLER_TEXT = "Summary follows."
FALLBACK_TEXT = "{name} could not respond right now. The discussion continues, please retry later."
SUMMARY_FALLBACK_TEXT = "{name} could not produce the closing summary right now. The discussion is closed."

DEFAULT_RULES_LINE = "Rules: keep statements short and tactical."
OUTPUT_CONSTRAINT = "Answer format: at most {max_lines} lines, no preamble, directly actionable."


def normalize_contribution(
    text: Optional[str],
    max_lines: Optional[int] = None,
    filler: str = FILLER_TEXT,
) -> str:
    """Keep the first ``max_lines`` non-blank lines (trimmed); empty -> filler.

    Idempotent: normalizing normalized text returns it unchanged.
    """
    limit = max_lines if max_lines is not None else settings.DISCUSSION_MAX_AGENT_LINES
    lines = [line.strip() for line in (text or "").splitlines()]
    kept = [line for line in lines if line][: max(1, limit)]
    if not kept:
        return filler
    return "\n".join(kept)


def render_rules(rules: List[str]) -> str:
    if not rules:
        return DEFAULT_RULES_LINE
    return "Rules:\n" + "\n".join(f"- {rule}" for rule in rules)


@dataclass
class Contribution:
    text: str
    is_fallback: bool = False
    model: Dict[str, str] = field(default_factory=dict)
    error: str = ""


class ContributionGenerator:
    """Produces one speaker's next message via the language-model backend."""

    def __init__(
        self,
        backend: LLMBackend,
        max_lines: Optional[int] = None,
        history_window: Optional[int] = None,
    ):
        self.backend = backend
        self.max_lines = max_lines if max_lines is not None else settings.DISCUSSION_MAX_AGENT_LINES
        self.history_window = (
            history_window if history_window is not None else settings.DISCUSSION_HISTORY_WINDOW
        )

    def build_instruction(
        self,
        persona: Persona,
        rules: List[str],
        speaker_order: Optional[List[str]] = None,
        opening: bool = False,
    ) -> str:
        parts = [
            persona.system_prompt.strip(),
            "You are taking part in a moderated discussion round.",
            render_rules(rules),
        ]
        if speaker_order:
            parts.append(f"Speaker order: {' -> '.join(speaker_order)}")
        parts.append(
            "You are opening the round now, based on the rules."
            if opening
            else "Deliver the next tactical contribution."
        )
        parts.append(OUTPUT_CONSTRAINT.format(max_lines=self.max_lines))
        return "\n\n".join(part for part in parts if part)

    def build_summary_instruction(self, persona: Persona, rules: List[str]) -> str:
        parts = [
            persona.system_prompt.strip(),
            "Write a short closing synthesis of the discussion, not a regular contribution.",
            f"At most {self.max_lines} lines, clear and decision-oriented, no preamble.",
            render_rules(rules) if rules else "",
        ]
        return "\n\n".join(part for part in parts if part)

    def render_history(self, turns: List[Turn]) -> str:
        window = turns[-self.history_window:] if self.history_window > 0 else []
        return "\n".join(f"{turn.speaker_name}: {turn.content}" for turn in window)

    def build_conversation(self, turns: List[Turn], summary: bool = False) -> str:
        history = self.render_history(turns)
        if summary:
            return f"Discussion so far:\n{history}\n\nGive the closing summary now."
        if history:
            return f"Discussion so far:\n{history}\n\nYour contribution now."
        return "Start your contribution now."

    async def generate(
        self,
        persona: Persona,
        history: List[Turn],
        rules: List[str],
        speaker_order: Optional[List[str]] = None,
        opening: bool = False,
    ) -> Contribution:
        instruction = self.build_instruction(persona, rules, speaker_order, opening)
        conversation = self.build_conversation(history)
        return await self._complete(
            persona,
            instruction,
            conversation,
            filler=FILLER_TEXT,
            fallback=FALLBACK_TEXT,
        )

    async def generate_summary(
        self,
        persona: Persona,
        history: List[Turn],
        rules: List[str],
    ) -> Contribution:
        instruction = self.build_summary_instruction(persona, rules)
        conversation = self.build_conversation(history, summary=True)
        return await self._complete(
            persona,
            instruction,
            conversation,
            filler=SUMMARY_FILLER_TEXT,
            fallback=SUMMARY_FALLBACK_TEXT,
        )

    async def _complete(
        self,
        persona: Persona,
        instruction: str,
        conversation: str,
        *,
        filler: str,
        fallback: str,
    ) -> Contribution:
        model = self.backend.describe(persona.ai_model_config)
        try:
            raw = await self.backend.complete(instruction, conversation, persona.ai_model_config)
        except LLMConfigurationError:
            raise
        except Exception as exc:
            error_text = str(exc).strip() or exc.__class__.__name__
            logger.warning(
                "contribution_backend_failed",
                persona_id=persona.id,
                persona_name=persona.name,
                error=error_text,
                error_type=exc.__class__.__name__,
            )
            return Contribution(
                text=normalize_contribution(
                    fallback.format(name=persona.name), self.max_lines, filler
                ),
                is_fallback=True,
                model=model,
                error=error_text,
            )
        return Contribution(
            text=normalize_contribution(raw, self.max_lines, filler),
            model=model,
        )
