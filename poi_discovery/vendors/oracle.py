"""Extraction oracles turning free text into structured location fields."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import openai
from openai import OpenAI

from poi_discovery.core.config import Settings
from poi_discovery.core.errors import ExtractionFailure, ExtractionTimeout
from poi_discovery.core.models import REQUIRED_FIELDS, ConversationTurn, OracleResult, SuggestedAction

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You extract restaurant and food-spot listings from user messages and web snippets.
Reply with a single JSON object and nothing else:
{
  "fields": {
    "name": string|null,
    "address": string|null,
    "coordinates": {"lat": number, "lng": number}|null,
    "category": string|null,
    "service_type": "dine-in"|"takeaway"|"both"|null,
    "price_range": "$"|"$$"|"$$$"|"$$$$"|null,
    "phone": string|null,
    "website": string|null,
    "hours": {"monday": {"open": "HH:MM", "close": "HH:MM"}, ...},
    "description": string|null
  },
  "confidence": number between 0 and 1,
  "missing_fields": [names of required fields you could not determine],
  "suggested_action": "accept"|"ask_clarify"|"ask_choice"|"request_web_search"|"request_manual_input",
  "follow_up": one short question for the user, or null,
  "choices": [options when suggested_action is ask_choice]
}
Required fields are name, address, coordinates, category and service_type.
Never invent values that are not stated or strongly implied. Do not assume a city or country."""

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_oracle_payload(content: Optional[str]) -> OracleResult:
    """Parse the model's JSON reply, tolerating code fences and camelCase keys."""
    text = _CODE_FENCE.sub("", (content or "").strip()).strip()
    if not text:
        raise ExtractionFailure("oracle returned an empty reply")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ExtractionFailure(f"oracle reply is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ExtractionFailure("oracle reply is not a JSON object")

    fields = payload.get("fields") or payload.get("extracted") or {}
    if not isinstance(fields, dict):
        fields = {}
    confidence = payload.get("confidence", 0.0)
    try:
        confidence = float(confidence)
    except (TypeError, ValueError):
        confidence = 0.0

    follow_up = payload.get("follow_up") or payload.get("followUp")
    if not follow_up:
        suggestions = payload.get("suggestions") or []
        follow_up = suggestions[0] if suggestions else None

    return OracleResult(
        fields=fields,
        confidence=confidence,
        missing_fields=[str(f) for f in payload.get("missing_fields") or payload.get("missingFields") or []],
        suggested_action=SuggestedAction.from_raw(payload.get("suggested_action") or payload.get("nextAction")),
        follow_up=follow_up,
        choices=[str(c) for c in payload.get("choices") or []],
    )


class OpenAIExtractionOracle:
    """Oracle backed by any OpenAI-compatible chat completions endpoint."""

    def __init__(self, client: OpenAI, model: str, *, timeout: float = 20) -> None:
        self.client = client
        self.model = model
        self.timeout = timeout

    def extract(self, text: str, context: Sequence[ConversationTurn] = ()) -> OracleResult:
        messages: List[Dict[str, str]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        for turn in context:
            role = turn.role if turn.role in ("user", "assistant") else "user"
            messages.append({"role": role, "content": turn.content})
        messages.append({"role": "user", "content": text})

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0,
                response_format={"type": "json_object"},
                timeout=self.timeout,
            )
        except openai.APITimeoutError as exc:
            raise ExtractionTimeout(f"extraction timed out after {self.timeout}s") from exc
        except openai.OpenAIError as exc:
            raise ExtractionFailure(f"extraction call failed: {exc}") from exc

        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ExtractionFailure("extraction call returned no choices")
        return parse_oracle_payload(choices[0].message.content)


_QUOTED_NAME = re.compile(r"[\"“]([^\"”]{2,80})[\"”]|(?<!\w)'([^']{2,80})'(?!\w)")
_NAMED_PATTERN = re.compile(r"\b(?:called|named)\s+((?:[A-Z][\w'&.-]*\s?){1,5})")
_ADDRESS_PATTERN = re.compile(
    r"(?:\d+[A-Za-z]?,?\s+)?(?:[A-Z][\w'.-]*\s+){1,4}"
    r"(?i:street|st|road|rd|avenue|ave|way|close|crescent|lane|drive|boulevard|blvd)\b\.?"
    r"(?:,\s*[A-Z][\w'.-]*(?:\s+[A-Z][\w'.-]*)*)*"
)
_CATEGORY_KEYWORDS = ("restaurant", "bukka", "buka", "canteen", "cafe", "eatery", "spot", "joint")
_TAKEAWAY_KEYWORDS = ("takeaway", "take-away", "take away", "takeout", "take-out", "delivery")
_DINE_IN_KEYWORDS = ("dine-in", "dine in", "eat in", "sit down", "sit-down")


class HeuristicOracle:
    """Deterministic regex extractor used when no model endpoint is configured."""

    def extract(self, text: str, context: Sequence[ConversationTurn] = ()) -> OracleResult:
        user_text = " ".join([turn.content for turn in context if turn.role == "user"] + [text or ""])
        lowered = user_text.lower()
        fields: Dict[str, Any] = {}
        confidence = 0.0

        name = _find_name(user_text)
        if name:
            fields["name"] = name
            confidence += 0.2

        address_match = _ADDRESS_PATTERN.search(user_text)
        if address_match:
            fields["address"] = address_match.group(0).strip(" ,.")
            confidence += 0.15

        if any(keyword in lowered for keyword in _CATEGORY_KEYWORDS):
            fields["category"] = "restaurant"
            confidence += 0.05

        takeaway = any(keyword in lowered for keyword in _TAKEAWAY_KEYWORDS)
        dine_in = any(keyword in lowered for keyword in _DINE_IN_KEYWORDS)
        if takeaway or dine_in:
            fields["service_type"] = "both" if takeaway and dine_in else ("takeaway" if takeaway else "dine-in")
            confidence += 0.05

        missing = [field_name for field_name in REQUIRED_FIELDS if field_name not in fields]
        if "name" in missing:
            follow_up = "What's the name of the place?"
            action = SuggestedAction.ASK_CLARIFY
        elif "address" in missing:
            follow_up = "What's the full address, including city and country?"
            action = SuggestedAction.ASK_CLARIFY
        else:
            follow_up = None
            action = SuggestedAction.ACCEPT

        return OracleResult(
            fields=fields,
            confidence=round(confidence, 2),
            missing_fields=missing,
            suggested_action=action,
            follow_up=follow_up,
        )


def _find_name(text: str) -> Optional[str]:
    quoted = _QUOTED_NAME.search(text)
    if quoted:
        return (quoted.group(1) or quoted.group(2)).strip()
    named = _NAMED_PATTERN.search(text)
    if named:
        return named.group(1).strip()
    return None


def build_oracle(settings: Settings):
    """Use the model endpoint when credentials or a base URL are configured, else the heuristic."""
    if settings.openai_api_key or settings.openai_api_base:
        client = OpenAI(
            api_key=settings.openai_api_key or "unused",
            base_url=settings.openai_api_base or None,
            max_retries=0,
        )
        return OpenAIExtractionOracle(client, settings.extraction_model, timeout=settings.extraction_timeout_seconds)
    logger.warning("No extraction model configured; using heuristic extraction")
    return HeuristicOracle()
