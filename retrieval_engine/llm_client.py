"""OpenRouter LLM client with a messages-style adapter and a plain streaming helper."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator

from retrieval_engine.config import settings


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TextBlock:
    type: str
    text: str


@dataclass
class ToolUseBlock:
    type: str
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class MessageResponse:
    content: list[Any]
    usage: Usage

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if getattr(block, "type", None) == "text")

    def tool_call(self, name: str) -> ToolUseBlock | None:
        for block in self.content:
            if getattr(block, "type", None) == "tool_use" and block.name == name:
                return block
        return None


class OpenRouterStream:
    def __init__(self, stream_coro: Any):
        self._stream_coro = stream_coro
        self._stream: Any | None = None
        self._usage = Usage()

    async def __aenter__(self) -> "OpenRouterStream":
        self._stream = await self._stream_coro
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is not None:
            await self._stream.close()

    async def _iter_text(self) -> AsyncIterator[str]:
        if self._stream is None:
            return
        async for chunk in self._stream:
            choices = getattr(chunk, "choices", None) or []
            usage = getattr(chunk, "usage", None)
            if usage:
                self._usage = Usage(
                    input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                    output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                )

            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            if not delta:
                continue
            text = getattr(delta, "content", None)
            if text:
                yield text

    @property
    def text_stream(self) -> AsyncIterator[str]:
        return self._iter_text()

    @property
    def usage(self) -> Usage:
        return self._usage


class OpenRouterMessagesAdapter:
    def __init__(self, openai_client: Any):
        self._client = openai_client

    @staticmethod
    def _temperature_for_model(model: str, requested: float | None) -> float:
        # Some GPT-5-compatible gateways reject anything but the default temperature.
        if "gpt-5" in (model or "").lower():
            return 1
        return 0 if requested is None else requested

    def _to_openai_messages(self, system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        openai_messages: list[dict[str, Any]] = []
        if system:
            openai_messages.append({"role": "system", "content": system})
        for message in messages:
            content = message["content"]
            openai_messages.append(
                {"role": message["role"], "content": content if isinstance(content, str) else str(content)}
            )
        return openai_messages

    def _to_openai_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
                },
            }
            for t in tools
        ]

    def _from_openai_response(self, response: Any) -> MessageResponse:
        choice = response.choices[0].message
        content: list[Any] = []

        text = getattr(choice, "content", None)
        if text:
            content.append(TextBlock(type="text", text=text))

        for tc in getattr(choice, "tool_calls", []) or []:
            args = getattr(tc.function, "arguments", "{}") or "{}"
            try:
                parsed_args = json.loads(args)
            except json.JSONDecodeError:
                parsed_args = {}
            content.append(
                ToolUseBlock(
                    type="tool_use",
                    id=tc.id,
                    name=tc.function.name,
                    input=parsed_args if isinstance(parsed_args, dict) else {},
                )
            )

        usage = getattr(response, "usage", None)
        mapped_usage = Usage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )

        return MessageResponse(content=content, usage=mapped_usage)

    async def create(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] = "auto",
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> MessageResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._to_openai_messages(system, messages),
            "max_tokens": max_tokens,
            "temperature": self._temperature_for_model(model, temperature),
        }
        if tools:
            kwargs["tools"] = self._to_openai_tools(tools)
            kwargs["tool_choice"] = tool_choice
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._client.chat.completions.create(**kwargs)
        return self._from_openai_response(response)

    def stream(
        self,
        *,
        model: str,
        max_tokens: int,
        system: str,
        messages: list[dict[str, Any]],
        temperature: float | None = None,
    ) -> OpenRouterStream:
        stream = self._client.chat.completions.create(
            model=model,
            messages=self._to_openai_messages(system, messages),
            max_tokens=max_tokens,
            temperature=self._temperature_for_model(model, temperature),
            stream=True,
            stream_options={"include_usage": True},
        )
        return OpenRouterStream(stream)


class OpenRouterClientAdapter:
    def __init__(self, openai_client: Any):
        self.raw = openai_client
        self.messages = OpenRouterMessagesAdapter(openai_client)


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model reply, tolerating code fences."""
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def get_client() -> OpenRouterClientAdapter:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )
    return OpenRouterClientAdapter(openai_client)


def is_configured() -> bool:
    return bool(settings.openrouter_api_key.strip())


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


def get_planner_model() -> str:
    return settings.planner_model or get_model()


def get_selection_model() -> str:
    return settings.selection_model or get_planner_model()


_client: OpenRouterClientAdapter | None = None


def client() -> OpenRouterClientAdapter:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client


async def send_message(
    messages: list[dict[str, Any]],
    *,
    system: str = "",
    model: str | None = None,
    max_tokens: int = 2000,
    temperature: float | None = None,
) -> AsyncIterator[str]:
    """Stream text deltas for a plain chat exchange."""
    async with client().messages.stream(
        model=model or get_model(),
        max_tokens=max_tokens,
        system=system,
        messages=messages,
        temperature=temperature,
    ) as stream:
        async for text in stream.text_stream:
            yield text
