"""OpenAI generation adapter (also works for any OpenAI-compatible API)."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
import structlog

from chatrelay.common.errors import GenerationError
from chatrelay.common.tokens import count_message_tokens, count_tokens
from chatrelay.config import GenerationSettings
from chatrelay.providers.base import GenerationAdapter, GenerationChunk, ToolSpec
from chatrelay.schemas.conversation import ConversationTurn, Role
from chatrelay.schemas.tools import NoTool, ToolCall, parse_tool_decision

logger = structlog.stdlib.get_logger()


class OpenAIAdapter(GenerationAdapter):
    provider_name = "openai"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: GenerationSettings,
        embedding_model: str = "text-embedding-3-small",
    ) -> None:
        super().__init__(http_client)
        self.settings = settings
        self.embedding_model = embedding_model

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }

    def build_messages(
        self,
        prior_turns: Sequence[ConversationTurn],
        new_message: str,
        system_context: str | None = None,
    ) -> list[dict[str, str]]:
        system_prompt = self.settings.system_prompt
        if system_context:
            system_prompt = f"{system_prompt}\n\n{system_context}"

        messages = [{"role": "system", "content": system_prompt}]
        for turn in prior_turns:
            role = "user" if turn.role is Role.USER else "assistant"
            messages.append({"role": role, "content": turn.content})
        messages.append({"role": "user", "content": new_message})
        return messages

    async def _post(self, path: str, body: dict[str, Any], operation: str) -> dict[str, Any]:
        url = f"{self.settings.api_base}{path}"
        try:
            response = await self.client.post(
                url,
                headers=self._headers,
                json=body,
                timeout=self.settings.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise GenerationError(
                f"OpenAI {operation} timed out: {e}", details={"provider": "openai"}
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(
                f"Failed to reach OpenAI for {operation}: {e}", details={"provider": "openai"}
            ) from e

        if response.status_code != 200:
            await self._handle_error_response(response, operation)
        return response.json()

    async def generate_embedding(self, text: str) -> list[float]:
        raw = await self._post(
            "/embeddings",
            {"model": self.embedding_model, "input": text},
            "embedding",
        )
        try:
            return [float(v) for v in raw["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise GenerationError("OpenAI embedding response was malformed") from e

    async def decide_tool(
        self,
        prior_turns: Sequence[ConversationTurn],
        new_message: str,
        tools: Sequence[ToolSpec],
    ) -> tuple[NoTool | ToolCall, int]:
        if not tools:
            return NoTool(), 0

        raw = await self._post(
            "/chat/completions",
            {
                "model": self.settings.model,
                "messages": self.build_messages(prior_turns, new_message),
                "tools": [
                    {
                        "type": "function",
                        "function": {
                            "name": t.name,
                            "description": t.description,
                            "parameters": t.parameters,
                        },
                    }
                    for t in tools
                ],
                "tool_choice": "auto",
            },
            "tool_decision",
        )
        choices = raw.get("choices") or [{}]
        decision = parse_tool_decision(choices[0].get("message"))
        tokens = int((raw.get("usage") or {}).get("total_tokens", 0))
        return decision, tokens

    async def stream_completion(
        self,
        prior_turns: Sequence[ConversationTurn],
        new_message: str,
        *,
        system_context: str | None = None,
    ) -> AsyncIterator[GenerationChunk]:
        messages = self.build_messages(prior_turns, new_message, system_context)
        body = {
            "model": self.settings.model,
            "messages": messages,
            "max_tokens": self.settings.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        url = f"{self.settings.api_base}/chat/completions"

        usage_reported = False
        produced: list[str] = []
        try:
            async with self.client.stream(
                "POST",
                url,
                headers=self._headers,
                json=body,
                timeout=self.settings.timeout_seconds,
            ) as resp:
                if resp.status_code != 200:
                    await resp.aread()
                    await self._handle_error_response(resp, "completion")

                async for line in resp.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[6:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        continue

                    for choice in event.get("choices") or []:
                        content = (choice.get("delta") or {}).get("content")
                        if content:
                            produced.append(content)
                            yield GenerationChunk(text=content)

                    usage = event.get("usage")
                    if usage and usage.get("total_tokens") is not None:
                        usage_reported = True
                        yield GenerationChunk(total_tokens=int(usage["total_tokens"]))
        except httpx.TimeoutException as e:
            raise GenerationError(
                f"OpenAI stream timed out: {e}", details={"provider": "openai"}
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(
                f"OpenAI stream failed: {e}", details={"provider": "openai"}
            ) from e

        if not usage_reported:
            estimate = count_message_tokens(messages, self.settings.model) + count_tokens(
                "".join(produced), self.settings.model
            )
            await logger.adebug("provider.openai.usage_estimated", total_tokens=estimate)
            yield GenerationChunk(total_tokens=estimate)
