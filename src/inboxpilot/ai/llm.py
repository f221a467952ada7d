"""Thin Claude wrapper shared by the rule selector, argument generator and drafter.

Every call goes through ``with_llm_retry`` (rate limits and overload) and is
written to ``llm_request_log`` when LLM logging is enabled. Two call shapes
are offered:

- ``complete_text``: plain text back (used for JSON-only answers and drafts)
- ``call_tool``: forced ``tool_choice`` so the answer is the tool input dict

Usage:
    from inboxpilot.ai.llm import LLMClient

    llm = LLMClient(anthropic.AsyncAnthropic(max_retries=0), store, config)
    text = await llm.complete_text(
        task="choose_rule", model=..., system=..., user=..., context=CallContext(message_id="m1")
    )
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import anthropic

from inboxpilot.core.errors import LLMError
from inboxpilot.core.logging import get_logger
from inboxpilot.core.retry import with_llm_retry

if TYPE_CHECKING:
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.db.store import DatabaseStore

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CallContext:
    """Who a call is made for, for log correlation."""

    email_account_id: int | None = None
    message_id: str | None = None


class LLMClient:
    """Async Claude client with retries and request logging.

    Attributes:
        _client: Anthropic async client (SDK retries disabled or low; this
            class owns rate-limit backoff)
        _store: Database store for request logging
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.AsyncAnthropic,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config

    async def complete_text(
        self,
        *,
        task: str,
        model: str,
        system: str,
        user: str,
        context: CallContext | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Send one user turn and return the concatenated text blocks.

        Raises:
            LLMError: If the API call fails after retries
        """
        messages = [{"role": "user", "content": user}]
        response, duration_ms = await self._create(
            task=task,
            model=model,
            system=system,
            messages=messages,
            context=context,
            max_tokens=max_tokens,
        )
        text = "".join(block.text for block in response.content if block.type == "text")
        await self._log_request(
            task, model, system, messages, response, None, context, duration_ms=duration_ms
        )
        return text

    async def call_tool(
        self,
        *,
        task: str,
        model: str,
        system: str,
        user: str,
        tool: dict[str, Any],
        context: CallContext | None = None,
    ) -> dict[str, Any] | None:
        """Force a single tool call and return its input.

        Returns:
            The tool input dict, or None if the model did not call the tool

        Raises:
            LLMError: If the API call fails after retries
        """
        messages = [{"role": "user", "content": user}]
        response, duration_ms = await self._create(
            task=task,
            model=model,
            system=system,
            messages=messages,
            context=context,
            tools=[tool],
            tool_choice={"type": "tool", "name": tool["name"]},
        )
        tool_input = _extract_tool_call(response, tool["name"])
        if tool_input is None:
            logger.warning("llm_no_tool_call", task=task, tool=tool["name"])
        await self._log_request(
            task, model, system, messages, response, tool_input, context, duration_ms=duration_ms
        )
        return tool_input

    async def _create(
        self,
        *,
        task: str,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        context: CallContext | None,
        max_tokens: int | None = None,
        **kwargs: Any,
    ) -> tuple[anthropic.types.Message, int]:
        start_time = time.monotonic()

        async def _call() -> anthropic.types.Message:
            return await self._client.messages.create(
                model=model,
                max_tokens=max_tokens or self._config.llm.max_tokens,
                system=system,
                messages=messages,
                **kwargs,
            )

        try:
            response = await with_llm_retry(
                _call, label=task, max_retries=self._config.llm.max_retries
            )
            return response, int((time.monotonic() - start_time) * 1000)
        except anthropic.APIConnectionError as e:
            error = f"API connection error: {e}"
        except anthropic.APIStatusError as e:
            error = f"API status error {e.status_code}: {e.message}"

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.error("llm_call_failed", task=task, model=model, error=error)
        await self._log_request(
            task, model, system, messages, None, None, context, duration_ms=duration_ms, error=error
        )
        raise LLMError(f"LLM call for {task} failed: {error}", task=task)

    async def _log_request(
        self,
        task: str,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        tool_call: dict[str, Any] | None,
        context: CallContext | None,
        duration_ms: int | None = None,
        error: str | None = None,
    ) -> None:
        logging_config = self._config.llm_logging
        if not logging_config.enabled:
            return

        try:
            prompt_data: dict[str, Any] = {"messages": messages if logging_config.log_prompts else []}
            if logging_config.log_prompts:
                prompt_data["system"] = system

            response_data: dict[str, Any] | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None
            if response is not None:
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens
                if logging_config.log_responses:
                    response_data = {
                        "id": response.id,
                        "model": response.model,
                        "stop_reason": response.stop_reason,
                        "content": [_content_block_to_dict(block) for block in response.content],
                    }

            await self._store.log_llm_request(
                task_type=task,
                model=model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                email_account_id=context.email_account_id if context else None,
                message_id=context.message_id if context else None,
                error=error,
            )
        except Exception as e:
            # Logging failures never block the pipeline
            logger.warning("llm_log_failed", task=task, error=str(e))


def _extract_tool_call(response: anthropic.types.Message, name: str) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == name:
            return block.input
    return None


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    elif block.type == "tool_use":
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    return {"type": block.type}
