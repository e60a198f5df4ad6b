from __future__ import annotations

import json
import logging
import re
from typing import Any, Sequence

from openai import AsyncOpenAI, OpenAIError

from medinterp.internal_core.config import InterpreterConfig
from medinterp.internal_core.contracts import Utterance

logger = logging.getLogger(__name__)

SUMMARY_UNAVAILABLE = "Summary generation failed - OpenAI API not available"
_RAW_PREVIEW_CHARS = 200
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")

SUMMARY_SYSTEM_PROMPT = (
    "You are a medical assistant. Analyze this doctor-patient conversation transcript "
    "and provide a JSON response with:\n"
    "1. A clinical summary of the conversation\n"
    "2. A list of detected actions (schedule_followup, schedule_lab, "
    "prescribe_medication, refer_specialist)\n\n"
    'Format: {"summary": "...", "actions": [...]}'
)


def build_transcript(utterances: Sequence[Utterance]) -> str:
    return "\n".join(f"{item.role}: {item.text}" for item in utterances)


def _normalize_actions(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    out: list[dict[str, Any]] = []
    for item in raw:
        if isinstance(item, dict):
            out.append(dict(item))
        elif isinstance(item, str) and item.strip():
            out.append({"actionType": item.strip()})
    return out


def parse_summary_response(content: str | None) -> tuple[str, list[dict[str, Any]]]:
    """
    Decode the model reply into `(summary, actions)`.

    Accepts bare JSON or JSON wrapped in a markdown code fence. Anything that
    does not decode to an object falls back to a raw-response summary.
    """
    text = content or '{"summary": "", "actions": []}'
    match = _FENCED_JSON_RE.search(text)
    candidate = match.group(1) if match else text
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        logger.warning("summary_response_unparseable size=%s", len(text))
        preview = text[:_RAW_PREVIEW_CHARS]
        return f"Clinical conversation completed. Raw response: {preview}...", []
    return str(data.get("summary") or ""), _normalize_actions(data.get("actions"))


async def summarize_conversation(
    utterances: Sequence[Utterance],
    *,
    cfg: InterpreterConfig,
    client: AsyncOpenAI | None = None,
) -> tuple[str, list[dict[str, Any]]]:
    if client is None:
        api_key = cfg.openai_api_key
        if not api_key:
            logger.warning("summary_skipped reason=openai_key_missing")
            return SUMMARY_UNAVAILABLE, []
        client = AsyncOpenAI(api_key=api_key)

    try:
        completion = await client.chat.completions.create(
            model=cfg.MEDINTERP_SUMMARY_MODEL,
            messages=[
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": build_transcript(utterances)},
            ],
        )
    except OpenAIError as exc:
        logger.error("summary_request_failed model=%s error=%s", cfg.MEDINTERP_SUMMARY_MODEL, exc)
        return SUMMARY_UNAVAILABLE, []

    content = completion.choices[0].message.content if completion.choices else None
    summary, actions = parse_summary_response(content)
    logger.info("summary_generated utterances=%s actions=%s", len(utterances), len(actions))
    return summary, actions
