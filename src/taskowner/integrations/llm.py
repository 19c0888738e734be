"""LLM-backed intent classifier and reply generator.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint (OpenRouter
by default). Transport retries are left to the caller so one policy
governs every attempt.
"""

from __future__ import annotations

import time
from typing import Any

import certifi
import httpx
import structlog

from taskowner.config import LLMPreset, LLMPresets, settings
from taskowner.core.types import (
    ActionOutcome,
    GeneratedReply,
    IntentClassification,
    MessageIntent,
)
from taskowner.errors import CollaboratorError
from taskowner.integrations.prompts import (
    INTENT_CLASSIFICATION_SYSTEM_PROMPT,
    REPLY_SYSTEM_PROMPT,
    build_classification_prompt,
    build_reply_prompt,
    parse_json_response,
)

logger = structlog.get_logger()

UNPARSEABLE_CONFIDENCE = 0.5


def parse_classification(text: str) -> IntentClassification:
    """Turn raw model output into a classification.

    Anything unparseable becomes ``unknown`` at 0.5 confidence, which
    sits below the default threshold and triggers a clarification.
    """
    data = parse_json_response(text)
    if data is None:
        return IntentClassification(
            intent=MessageIntent.UNKNOWN,
            confidence=UNPARSEABLE_CONFIDENCE,
            reasoning="Failed to parse classifier output",
        )
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    extracted = data.get("extracted_data")
    return IntentClassification(
        intent=MessageIntent.parse(data.get("intent")),
        confidence=max(0.0, min(confidence, 1.0)),
        extracted_data=extracted if isinstance(extracted, dict) else {},
        reasoning=data.get("reasoning"),
    )


def parse_reply(text: str) -> tuple[str, dict[str, Any] | None]:
    """Split reply output into the user-facing text and a context update."""
    data = parse_json_response(text)
    if data is None or not data.get("reply"):
        return text.strip(), None
    update = data.get("context_update")
    return str(data["reply"]).strip(), update if isinstance(update, dict) else None


class LLMClassifier:
    """Classifier collaborator over an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        api_key = api_key or settings.llm_api_key
        if not api_key:
            raise RuntimeError(
                "TASKOWNER_LLM_API_KEY not set. "
                "Add api_key to keys.json under llm."
            )
        self._model = model or settings.llm_model
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.llm_base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "X-Title": "Task Owner",
            },
            verify=certifi.where(),
            timeout=httpx.Timeout(
                connect=5.0,
                read=settings.llm_read_timeout,
                write=5.0,
                pool=15.0,
            ),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _complete(self, system_prompt: str, prompt: str, preset: LLMPreset) -> str:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": preset.temperature,
            "max_tokens": preset.max_tokens,
        }
        t0 = time.monotonic()
        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("chat_completion_failed", status_code=status, response=e.response.text[:500])
            raise CollaboratorError(f"Chat completion failed: {status}", status_code=status) from e
        except httpx.HTTPError as e:
            logger.warning("chat_completion_error", error=str(e))
            raise CollaboratorError(f"Chat completion error: {e}") from e

        data = response.json()
        choices = data.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug(
            "chat_completion_success",
            model=self._model,
            llm_ms=round((time.monotonic() - t0) * 1000),
            content_length=len(content),
        )
        return content

    async def classify(
        self,
        text: str,
        conversation_state: str,
        task_detail: str | None,
        recent_messages: list[dict[str, str]],
    ) -> IntentClassification:
        prompt = build_classification_prompt(text, conversation_state, task_detail, recent_messages)
        raw = await self._complete(INTENT_CLASSIFICATION_SYSTEM_PROMPT, prompt, LLMPresets.CLASSIFIER)
        classification = parse_classification(raw)
        logger.info(
            "message_classified",
            intent=classification.intent.value,
            confidence=classification.confidence,
            state=conversation_state,
        )
        return classification

    async def generate_reply(
        self,
        intent: IntentClassification,
        user_message: str,
        conversation_state: str,
        task_detail: str | None,
        outcome: ActionOutcome | None,
        accumulated_context: dict[str, Any] | None = None,
        additional_context: str | None = None,
    ) -> GeneratedReply:
        prompt = build_reply_prompt(
            intent.intent,
            user_message,
            conversation_state,
            task_detail,
            outcome.describe() if outcome else None,
            accumulated_context,
            additional_context,
        )
        raw = await self._complete(REPLY_SYSTEM_PROMPT, prompt, LLMPresets.REPLY)
        text, update = parse_reply(raw)
        return GeneratedReply(text=text, updated_context=update)
