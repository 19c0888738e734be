"""Prompt construction and output parsing for the classifier."""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from taskowner.core.types import MessageIntent
from taskowner.integrations.interfaces import TrackerItem

logger = structlog.get_logger()

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


def format_item_for_llm(item: TrackerItem) -> str:
    """Render tracker detail as the TASK DETAILS block the prompts refer to."""
    lines = ["TASK DETAILS:", f"- Name: {item.name}", f"- URL: {item.url}"]
    if item.description:
        lines.append(f"- Description: {item.description}")
    if item.due_date:
        lines.append(f"- Due date: {item.due_date.strftime('%Y-%m-%d')}")
    if item.assignee:
        lines.append(f"- Currently assigned to: {item.assignee.name}")
    if item.created_by:
        lines.append(f"- Created by: {item.created_by.name}")
    if item.completed:
        lines.append("- Status: Completed")
    if item.projects:
        lines.append(f"- Projects: {', '.join(item.projects)}")
    if item.tags:
        lines.append(f"- Tags: {', '.join(item.tags)}")
    if item.custom_fields:
        lines.append("- Custom fields:")
        for name, value in item.custom_fields.items():
            lines.append(f"  - {name}: {value}")
    if item.created_at:
        lines.append(f"- Created: {item.created_at.strftime('%Y-%m-%d')}")
    return "\n".join(lines) + "\n"


INTENT_CLASSIFICATION_SYSTEM_PROMPT = """You are a task assignment assistant in Slack, connected to the team's Asana.

You help people take ownership of tasks, check in on progress and route problems to the right person.

Classify the user's message into exactly one of these intents:

TASK PROPOSITION RESPONSES (the user was offered a task):
- accept_task: wants to take the task ("Sure!", "I'll do it")
- decline_task: can't or won't take it ("Sorry, too busy")
- ask_question: asks about the task before deciding ("What's the deadline?")
- negotiate_timing: wants to discuss dates ("Can I start next week?")
- request_more_info: wants more detail ("Tell me more about this")

FOLLOW-UP RESPONSES (the user was asked how a task is going):
- status_update: shares progress ("About halfway there")
- report_blocker: is blocked ("Waiting on design")
- report_completion: says it is done ("Finished it this morning")
- request_help: needs someone to step in ("I need help with this")
- request_extension: asks for more time ("Can I get two more days?")

GENERAL:
- general_question, list_tasks, greeting, unknown

Use the conversation state: awaiting_proposition_response favours proposition intents,
awaiting_follow_up_response favours follow-up intents.

Extract structured data relevant to the intent (decline reason, blocker description,
progress percentage, requested date, the question asked).

Respond with JSON only."""


def build_classification_prompt(
    text: str,
    conversation_state: str,
    task_detail: str | None,
    recent_messages: list[dict[str, str]],
) -> str:
    parts = [
        "Classify the intent of this user message:",
        "",
        f'MESSAGE: "{text}"',
        "",
        "CONTEXT:",
        f"- Conversation state: {conversation_state}",
    ]
    if task_detail:
        parts += ["", task_detail]
    if recent_messages:
        parts += ["", "RECENT CONVERSATION:"]
        parts += [f"{m['role']}: {m['content']}" for m in recent_messages[-5:]]
    parts += [
        "",
        "Respond with JSON in this exact format:",
        "{",
        '  "intent": "<one of the intent categories>",',
        '  "confidence": <0.0 to 1.0>,',
        '  "extracted_data": { <relevant extracted data> },',
        '  "reasoning": "<brief explanation>"',
        "}",
    ]
    return "\n".join(parts)


REPLY_SYSTEM_PROMPT = (
    "You are a friendly task assignment assistant in Slack. "
    "Write natural, concise replies (1-3 sentences). No emojis unless the user used them. "
    "Never claim an action happened unless the ACTION OUTCOME says it succeeded."
)

REPLY_GUIDANCE: dict[MessageIntent, str] = {
    MessageIntent.ACCEPT_TASK: "The user agreed to take the task. If the claim succeeded, thank them, "
    "confirm the task name and due date, and say you'll check in. If it failed, explain kindly.",
    MessageIntent.DECLINE_TASK: "The user declined. Acknowledge without judgment, mention their reason "
    "if given, and say you'll find someone else.",
    MessageIntent.ASK_QUESTION: "Answer the question from TASK DETAILS. If the answer isn't there, say so. "
    "Then ask whether they'd like to take the task or have other questions.",
    MessageIntent.NEGOTIATE_TIMING: "Acknowledge the timing concern. If they proposed a date, confirm it "
    "is noted and ask whether they'll take the task on that timeline.",
    MessageIntent.REQUEST_MORE_INFO: "Share the relevant TASK DETAILS (name, description, due date, creator, "
    "project, custom fields) and ask whether that helps them decide.",
    MessageIntent.STATUS_UPDATE: "Thank them for the update and reflect the progress back briefly.",
    MessageIntent.REPORT_BLOCKER: "Acknowledge the blocker and say the administrator has been told.",
    MessageIntent.REPORT_COMPLETION: "Congratulate them on finishing the task.",
    MessageIntent.REQUEST_HELP: "Reassure them that the request was escalated to the administrator.",
    MessageIntent.REQUEST_EXTENSION: "Acknowledge the request for more time and note the requested date.",
    MessageIntent.GENERAL_QUESTION: "Answer clearly and offer more help if relevant.",
    MessageIntent.LIST_TASKS: "Present the user's tasks listed below and offer help with any of them.",
    MessageIntent.GREETING: "Return the greeting and briefly say what you can help with.",
    MessageIntent.UNKNOWN: "Ask for clarification and give examples of what you can help with.",
}


def build_reply_prompt(
    intent: MessageIntent,
    user_message: str,
    conversation_state: str,
    task_detail: str | None,
    outcome_text: str | None,
    accumulated_context: dict[str, Any] | None,
    additional_context: str | None,
) -> str:
    parts = [REPLY_GUIDANCE[intent], ""]
    if task_detail:
        parts.append(task_detail)
    if accumulated_context:
        parts += ["TASK HISTORY SO FAR:", json.dumps(accumulated_context, indent=2), ""]
    parts.append(f"Conversation state: {conversation_state}")
    if outcome_text:
        parts.append(f"ACTION OUTCOME: {outcome_text}")
    if additional_context:
        parts.append(f"Additional context: {additional_context}")
    parts += [
        "",
        f'USER\'S MESSAGE: "{user_message}"',
        "",
        "Respond with JSON:",
        "{",
        '  "reply": "<message to send to the user>",',
        '  "context_update": {',
        '    "key_points": ["<new facts learned this turn>"],',
        '    "current_understanding": "<one paragraph: where the task stands>",',
        '    "open_questions": ["<unresolved questions>"],',
        '    "commitments": ["<promises made by anyone>"]',
        "  }",
        "}",
    ]
    return "\n".join(parts)


def parse_json_response(text: str) -> dict[str, Any] | None:
    """Parse a JSON object, optionally wrapped in a markdown code fence."""
    match = _FENCE_RE.search(text)
    candidate = (match.group(1) if match else text).strip()
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        logger.warning("llm_json_parse_failed", text=text[:300])
        return None
    return parsed if isinstance(parsed, dict) else None
