from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from typing import Any, Dict, List, Protocol

import aiohttp

logger = logging.getLogger("room_memory_bot.services.chat")

_RETRIABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})
_ALLOWED_ROLES = frozenset({"system", "user", "assistant"})
_FENCE_OPEN_RE = re.compile(r"^```(?:json)?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"```$")


class ChatCompletionsError(RuntimeError):
    """Transport or protocol failure talking to the chat-completions endpoint."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retriable(self) -> bool:
        return self.status is None or self.status in _RETRIABLE_STATUSES


class JsonChatBackend(Protocol):
    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, Any] | None: ...


class ChatCompletionsClient:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint (DeepSeek by default)."""

    backend_name = "deepseek"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int = 60,
        temperature: float = 0.7,
        max_output_tokens: int = 1200,
        base_url: str = "https://api.deepseek.com",
    ) -> None:
        self.api_key = (api_key or "").strip()
        if not self.api_key:
            raise ValueError("DEEPSEEK_API_KEY is missing")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("chat model cannot be empty")
        self.base_url = (base_url or "https://api.deepseek.com").strip().rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=max(5, int(timeout_seconds)))
        self.temperature = float(temperature)
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    @staticmethod
    def _map_messages(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        """Drop empty turns; unknown roles are sent as ``user``."""
        mapped: List[Dict[str, str]] = []
        for msg in messages:
            content = str(msg.get("content", "")).strip()
            if not content:
                continue
            role = str(msg.get("role", "")).strip().lower()
            mapped.append({"role": role if role in _ALLOWED_ROLES else "user", "content": content})
        return mapped

    @staticmethod
    def _backoff_seconds(attempt: int) -> float:
        return min(4.0, 0.35 * attempt + random.random() * 0.25)

    async def _post_once(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._session is not None
        try:
            async with self._session.post(self._endpoint(), json=payload) as response:
                body = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ChatCompletionsError(f"chat completions transport error: {exc}") from exc
        if status != 200:
            raise ChatCompletionsError(f"chat completions error {status}: {body}", status=status)
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ChatCompletionsError("chat completions returned invalid JSON", status=status) from exc
        if not isinstance(parsed, dict):
            raise ChatCompletionsError("chat completions returned non-object JSON", status=status)
        return parsed

    async def _request(self, payload: Dict[str, Any], retries: int = 3) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()

        attempts = max(1, int(retries))
        for attempt in range(1, attempts + 1):
            try:
                return await self._post_once(payload)
            except ChatCompletionsError as exc:
                if not exc.retriable or attempt >= attempts:
                    raise
            await asyncio.sleep(self._backoff_seconds(attempt))
        raise ChatCompletionsError("chat completions request failed without a response")

    @staticmethod
    def _first_choice(data: Dict[str, Any]) -> Dict[str, Any] | None:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        return choices[0] if isinstance(choices[0], dict) else {}

    @classmethod
    def _reply_text(cls, data: Dict[str, Any]) -> str:
        """Stripped content of the first choice; empty when there is none."""
        first = cls._first_choice(data) or {}
        message = first.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        return content.strip() if isinstance(content, str) else ""

    @classmethod
    def _extract_text(cls, data: Dict[str, Any]) -> str:
        first = cls._first_choice(data)
        if first is None:
            raise ChatCompletionsError("chat completions returned no choices")
        text = cls._reply_text(data)
        if text:
            return text
        reason = first.get("finish_reason")
        suffix = f" (finish_reason={reason})" if reason else ""
        raise ChatCompletionsError(f"chat completions empty response{suffix}")

    def _payload(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None,
        max_output_tokens: int | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self._map_messages(messages),
            "temperature": self.temperature if temperature is None else float(temperature),
        }
        tokens = self.max_output_tokens if max_output_tokens is None else int(max_output_tokens)
        if tokens:
            payload["max_tokens"] = tokens
        return payload

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        data = await self._request(self._payload(messages, temperature, max_output_tokens))
        return self._extract_text(data)

    @staticmethod
    def _strip_json_fences(text: str) -> str:
        cleaned = (text or "").strip()
        if cleaned.startswith("```"):
            cleaned = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", cleaned).strip()).strip()
        return cleaned

    @classmethod
    def parse_json_object(cls, raw: str) -> Dict[str, Any] | None:
        """First JSON object in ``raw``; tolerates code fences and prose around it."""
        cleaned = cls._strip_json_fences(raw)
        candidates = [cleaned]
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start >= 0 and end > start:
            candidates.append(cleaned[start : end + 1])
        for candidate in candidates:
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            return parsed if isinstance(parsed, dict) else None
        return None

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> Dict[str, Any] | None:
        request_messages = list(messages)
        if schema_hint:
            request_messages.append(
                {
                    "role": "system",
                    "content": f"Reply with one JSON object only, no markdown. Schema hint: {schema_hint}",
                }
            )
        payload = self._payload(request_messages, temperature, max_output_tokens)
        payload["response_format"] = {"type": "json_object"}
        data = await self._request(payload)
        text = self._reply_text(data)
        if not text:
            first = self._first_choice(data) or {}
            logger.debug("[chat] empty JSON reply, finish_reason=%s", first.get("finish_reason"))
            return None
        return self.parse_json_object(text)
