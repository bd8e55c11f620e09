import json
import types

import httpx
import openai
import pytest

from poi_discovery.core.errors import ExtractionFailure, ExtractionTimeout
from poi_discovery.core.models import ConversationTurn, SuggestedAction
from poi_discovery.vendors import oracle


def make_response(content):
    message = types.SimpleNamespace(content=content)
    return types.SimpleNamespace(choices=[types.SimpleNamespace(message=message)])


class DummyCompletions:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class DummyClient:
    def __init__(self, outcome):
        self.completions = DummyCompletions(outcome)
        self.chat = types.SimpleNamespace(completions=self.completions)


def test_parse_payload_strips_code_fences():
    content = "```json\n" + json.dumps(
        {
            "fields": {"name": "Amala Skye"},
            "confidence": 0.8,
            "missing_fields": ["address"],
            "suggested_action": "ask_clarify",
            "follow_up": "Where is it?",
        }
    ) + "\n```"

    result = oracle.parse_oracle_payload(content)

    assert result.fields == {"name": "Amala Skye"}
    assert result.confidence == 0.8
    assert result.missing_fields == ["address"]
    assert result.suggested_action is SuggestedAction.ASK_CLARIFY
    assert result.follow_up == "Where is it?"


def test_parse_payload_accepts_camel_case_keys():
    content = json.dumps(
        {
            "extracted": {"name": "Iya Basira"},
            "confidence": 85,
            "missingFields": ["coordinates"],
            "nextAction": "perform_web_search",
            "suggestions": ["Which city is it in?"],
        }
    )

    result = oracle.parse_oracle_payload(content)

    assert result.fields == {"name": "Iya Basira"}
    assert result.confidence == 85.0
    assert result.suggested_action is SuggestedAction.REQUEST_WEB_SEARCH
    assert result.follow_up == "Which city is it in?"


@pytest.mark.parametrize("content", [None, "", "not json", "[1, 2]"])
def test_parse_payload_rejects_unusable_replies(content):
    with pytest.raises(ExtractionFailure):
        oracle.parse_oracle_payload(content)


def test_openai_oracle_sends_conversation():
    client = DummyClient(make_response('{"fields": {}, "confidence": 0.1, "suggested_action": "accept"}'))
    extractor = oracle.OpenAIExtractionOracle(client, "gpt-4o-mini", timeout=5)

    result = extractor.extract(
        "Surulere",
        [ConversationTurn("user", "Amala Shitta"), ConversationTurn("assistant", "Where is it?")],
    )

    call = client.completions.calls[0]
    assert result.suggested_action is SuggestedAction.ACCEPT
    assert call["model"] == "gpt-4o-mini"
    assert call["timeout"] == 5
    assert call["response_format"] == {"type": "json_object"}
    assert [message["role"] for message in call["messages"]] == ["system", "user", "assistant", "user"]
    assert call["messages"][-1]["content"] == "Surulere"


def test_openai_oracle_maps_timeouts():
    request = httpx.Request("POST", "https://api.example.test/v1/chat/completions")
    extractor = oracle.OpenAIExtractionOracle(DummyClient(openai.APITimeoutError(request=request)), "model")

    with pytest.raises(ExtractionTimeout):
        extractor.extract("Amala Skye")


def test_openai_oracle_maps_api_errors():
    request = httpx.Request("POST", "https://api.example.test/v1/chat/completions")
    extractor = oracle.OpenAIExtractionOracle(DummyClient(openai.APIConnectionError(request=request)), "model")

    with pytest.raises(ExtractionFailure) as excinfo:
        extractor.extract("Amala Skye")

    assert not isinstance(excinfo.value, ExtractionTimeout)


def test_openai_oracle_requires_choices():
    extractor = oracle.OpenAIExtractionOracle(DummyClient(types.SimpleNamespace(choices=[])), "model")

    with pytest.raises(ExtractionFailure):
        extractor.extract("Amala Skye")


def test_heuristic_oracle_asks_for_missing_name():
    result = oracle.HeuristicOracle().extract("amala spot on Allen Avenue, great food")

    assert "name" not in result.fields
    assert result.fields["address"] == "Allen Avenue"
    assert result.fields["category"] == "restaurant"
    assert result.suggested_action is SuggestedAction.ASK_CLARIFY
    assert result.follow_up == "What's the name of the place?"


def test_heuristic_oracle_uses_earlier_user_turns():
    context = [
        ConversationTurn("user", 'There is a buka called Iya Basira'),
        ConversationTurn("assistant", "What's the full address, including city and country?"),
    ]

    result = oracle.HeuristicOracle().extract("12 Allen Avenue, Ikeja and they do takeaway", context)

    assert result.fields["name"] == "Iya Basira"
    assert result.fields["address"] == "12 Allen Avenue, Ikeja"
    assert result.fields["service_type"] == "takeaway"
    assert result.suggested_action is SuggestedAction.ACCEPT


class DummySettings:
    def __init__(self, openai_api_key="", openai_api_base=""):
        self.openai_api_key = openai_api_key
        self.openai_api_base = openai_api_base
        self.extraction_model = "gpt-4o-mini"
        self.extraction_timeout_seconds = 7


def test_build_oracle_falls_back_to_heuristic():
    assert isinstance(oracle.build_oracle(DummySettings()), oracle.HeuristicOracle)


def test_build_oracle_uses_model_endpoint():
    extractor = oracle.build_oracle(DummySettings(openai_api_base="http://localhost:11434/v1"))

    assert isinstance(extractor, oracle.OpenAIExtractionOracle)
    assert extractor.timeout == 7
    assert extractor.model == "gpt-4o-mini"
