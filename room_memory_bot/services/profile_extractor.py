from __future__ import annotations

from typing import Any

from ..memory.models import ProfileFragment
from ..memory.profile_merge import normalize_extracted_profile
from ..prompts.memory import build_profile_messages, profile_schema_hint
from .chat_client import JsonChatBackend


class ProfileExtractor:
    def __init__(
        self,
        llm: JsonChatBackend | Any,
        *,
        max_input_chars: int = 200,
        temperature: float = 1.0,
        max_output_tokens: int = 500,
    ) -> None:
        self.llm = llm
        self.max_input_chars = max(1, int(max_input_chars))
        self.temperature = float(temperature)
        self.max_output_tokens = int(max_output_tokens)

    async def extract(self, content: str) -> ProfileFragment:
        """Structured profile fragment for free text; raises ``ValueError`` on bad input or output."""
        text = str(content or "").strip()
        if not text:
            raise ValueError("profile content is empty")
        if len(text) > self.max_input_chars:
            raise ValueError(f"profile content exceeds {self.max_input_chars} characters")
        raw = await self.llm.json_chat(
            build_profile_messages(text),
            profile_schema_hint(),
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )
        if raw is None:
            raise ValueError("invalid JSON from profile extractor")
        return normalize_extracted_profile(raw, text)
