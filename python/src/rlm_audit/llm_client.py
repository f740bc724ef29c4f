"""
LLM Client for RLM security analysis.

Provides:
- ModelClient: AsyncOpenAI over a pooled httpx client (OpenRouter-compatible)
- AssistantMessage / ToolCall: provider-neutral view of one model turn
- QueryExecutor: budgeted single, batched and structured calls that never raise
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from openai import AsyncOpenAI

from .budget import Budget
from .config import AuditConfig

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class AssistantMessage:
    """One assistant turn: concatenated text blocks plus any tool calls."""
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "stop"

    def to_message(self) -> dict[str, Any]:
        """Render back into the chat format so tool conversations round-trip."""
        # Content may only be null when the turn carries tool calls
        content = self.text if (self.text or not self.tool_calls) else None
        message: dict[str, Any] = {"role": "assistant", "content": content}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments),
                    },
                }
                for call in self.tool_calls
            ]
        return message


def tool_result_message(tool_call_id: str, content: str) -> dict[str, Any]:
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


def _normalize_stop_reason(finish_reason: str | None) -> str:
    if finish_reason in (None, "stop"):
        return "stop"
    if finish_reason in ("tool_calls", "function_call"):
        return "tool_use"
    return finish_reason


def _extract_text(content: Any) -> str:
    """Concatenate text blocks; providers return either a string or a list of parts."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, dict):
            if part.get("type") == "text":
                parts.append(part.get("text", ""))
        elif getattr(part, "type", None) == "text":
            parts.append(getattr(part, "text", ""))
    return "".join(parts)


def _decode_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


class CompletionClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AssistantMessage: ...


class ModelClient:
    """
    Model invocation service.

    Wraps AsyncOpenAI with connection pooling. Raises on failure; budget and
    error recovery live in QueryExecutor.
    """

    def __init__(self, config: AuditConfig | None = None):
        self.config = config or AuditConfig()

        # Create async HTTP client with connection pooling
        self._http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout_seconds),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

        self.client = AsyncOpenAI(
            api_key=self.config.api_key,
            base_url=self.config.api_base_url,
            http_client=self._http_client,
            default_headers={"X-Title": "RLM Security Audit"},
        )

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        await self._http_client.aclose()

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AssistantMessage:
        request: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": max_tokens or self.config.max_tokens,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
        }
        if tools:
            request["tools"] = tools

        response = await self.client.chat.completions.create(**request)
        if not response.choices:
            return AssistantMessage()

        choice = response.choices[0]
        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_decode_arguments(call.function.arguments),
            )
            for call in (choice.message.tool_calls or [])
        ]
        return AssistantMessage(
            text=_extract_text(choice.message.content),
            tool_calls=tool_calls,
            stop_reason=_normalize_stop_reason(choice.finish_reason),
        )


class QueryExecutor:
    """
    Budgeted access to the model.

    Every call charges the shared Budget synchronously before dispatch. Once
    the budget is exhausted calls short-circuit without touching the network.
    Failures are logged and degrade to "" (or None for complete()), never raised.
    """

    def __init__(
        self,
        client: CompletionClient,
        budget: Budget,
        config: AuditConfig | None = None,
    ):
        self.client = client
        self.budget = budget
        self.config = config or AuditConfig()

    @property
    def call_count(self) -> int:
        return self.budget.call_count

    @property
    def is_exhausted(self) -> bool:
        return self.budget.is_exhausted

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AssistantMessage | None:
        if not self.budget.try_charge():
            return None

        try:
            return await asyncio.wait_for(
                self.client.complete(system_prompt, messages, tools=tools),
                timeout=self.config.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"[RLM] Model call timed out after {self.config.request_timeout_seconds}s"
            )
        except Exception as e:
            logger.warning(f"[RLM] Model call failed: {type(e).__name__}: {e}")
        return None

    async def query(self, system_prompt: str, user_prompt: str) -> str:
        """One model call; "" when exhausted or on any failure."""
        message = await self.complete(system_prompt, [{"role": "user", "content": user_prompt}])
        return message.text if message is not None else ""

    async def query_batched(self, calls: list[tuple[str, str]]) -> list[str]:
        """
        Run (system_prompt, user_prompt) pairs in groups of `concurrency`.

        Groups run sequentially, members of a group in parallel. Result order
        matches input order.
        """
        group_size = max(1, self.budget.concurrency)
        results: list[str] = []
        for i in range(0, len(calls), group_size):
            group = calls[i:i + group_size]
            results.extend(await asyncio.gather(
                *(self.query(system_prompt, user_prompt) for system_prompt, user_prompt in group)
            ))
        return results
