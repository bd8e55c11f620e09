import pytest

from poi_discovery.core.errors import ExtractionFailure, ExtractionTimeout
from poi_discovery.core.models import (
    CandidateRecord,
    Coordinates,
    NormalizationStatus,
    OracleResult,
    SourceKind,
    SuggestedAction,
)
from poi_discovery.etl import normalize
from poi_discovery.etl.normalize import ExtractionNormalizer
from poi_discovery.vendors.oracle import HeuristicOracle


class DummyOracle:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def extract(self, text, context=()):
        self.calls.append((text, list(context)))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def make_candidate(**overrides):
    fields = dict(
        source="google_places",
        name="  Iya   Basira ",
        address="12 Allen Avenue,  Ikeja",
        coordinates=Coordinates(6.6, 3.35),
        categories=["point_of_interest", "Restaurant", "restaurant", "meal_takeaway"],
        rating=7,
        price_level=2,
        phone="0803 123 4567",
        website="iyabasira.ng",
        hours={"monday": {"open": "08:00", "close": "20:00"}, "funday": {"open": "08:00", "close": "09:00"}},
    )
    fields.update(overrides)
    return CandidateRecord(**fields)


def test_structured_candidate_is_mapped_and_validated():
    normalizer = ExtractionNormalizer(DummyOracle([]), default_phone_region="NG")

    result = normalizer.normalize(make_candidate())
    record = result.record

    assert result.status is NormalizationStatus.COMPLETE
    assert record.name == "Iya Basira"
    assert record.address == "12 Allen Avenue, Ikeja"
    assert record.category == "restaurant"
    assert record.categories == ["point_of_interest", "restaurant", "meal_takeaway"]
    assert record.service_type == "both"
    assert record.rating == 5.0
    assert record.price_range == "$$"
    assert record.phone == "+2348031234567"
    assert record.website == "https://iyabasira.ng/"
    assert record.hours == {"monday": {"open": "08:00", "close": "20:00"}}
    assert record.missing_fields == []
    assert record.confidence == 1.0


def test_structured_confidence_reflects_missing_fields():
    normalizer = ExtractionNormalizer(DummyOracle([]))

    record = normalizer.normalize(make_candidate(coordinates=Coordinates(123.0, 3.0), categories=[])).record

    assert record.coordinates is None
    assert set(record.missing_fields) == {"coordinates", "category", "service_type"}
    assert record.confidence == pytest.approx(0.4)
    assert record.confidence < 1.0


def test_normalization_is_idempotent():
    normalizer = ExtractionNormalizer(DummyOracle([]))
    candidate = make_candidate()

    assert normalizer.normalize(candidate).record == normalizer.normalize(candidate).record


def test_names_keep_their_case():
    normalizer = ExtractionNormalizer(DummyOracle([]))
    record = normalizer.normalize(make_candidate(name="amala SKYE  bukka")).record
    assert record.name == "amala SKYE bukka"


def test_free_text_surfaces_follow_up_question():
    normalizer = ExtractionNormalizer(HeuristicOracle())

    result = normalizer.normalize("amala spot on Allen Avenue, great food")

    assert result.status is NormalizationStatus.NEEDS_INPUT
    assert "name" in result.record.missing_fields
    assert result.record.address == "Allen Avenue"
    assert result.record.confidence < 1.0
    assert result.follow_up
    assert result.rounds == 0


def test_oracle_percentage_confidence_is_scaled_and_capped():
    oracle = DummyOracle(
        [
            OracleResult(
                fields={"name": "Amala Skye", "address": "Ikeja"},
                confidence=100,
                suggested_action=SuggestedAction.ACCEPT,
            )
        ]
    )
    normalizer = ExtractionNormalizer(oracle)

    result = normalizer.normalize("Amala Skye in Ikeja")

    assert result.status is NormalizationStatus.COMPLETE
    assert result.record.confidence == 0.99
    assert "coordinates" in result.record.missing_fields


def test_ask_choice_surfaces_choices():
    oracle = DummyOracle(
        [
            OracleResult(
                fields={"name": "Amala Shitta"},
                confidence=0.5,
                suggested_action=SuggestedAction.ASK_CHOICE,
                follow_up="Which branch?",
                choices=["Surulere", "Ikeja"],
            )
        ]
    )
    result = ExtractionNormalizer(oracle).normalize("Amala Shitta")

    assert result.needs_input
    assert result.action is SuggestedAction.ASK_CHOICE
    assert result.follow_up == "Which branch?"
    assert result.choices == ["Surulere", "Ikeja"]


def test_round_cap_finalises_with_missing_fields():
    oracle = DummyOracle(
        [OracleResult(fields={"name": "Amala Shitta"}, confidence=0.6, suggested_action=SuggestedAction.ASK_CLARIFY)]
    )
    normalizer = ExtractionNormalizer(oracle, max_clarify_rounds=2)
    conversation = [
        {"role": "user", "content": "Amala Shitta"},
        {"role": "assistant", "content": "Where is it?"},
        {"role": "user", "content": "Surulere"},
        {"role": "assistant", "content": "Which street?"},
    ]

    result = normalizer.normalize("not sure", conversation=conversation)

    assert result.status is NormalizationStatus.COMPLETE
    assert result.rounds == 2
    assert result.record.confidence == 0.6
    assert "address" in result.record.missing_fields
    assert oracle.calls[0][1][1].role == "assistant"


def test_non_interactive_never_asks():
    oracle = DummyOracle(
        [OracleResult(fields={}, confidence=0.2, suggested_action=SuggestedAction.REQUEST_WEB_SEARCH)]
    )
    candidate = CandidateRecord(source="web_harvest", source_kind=SourceKind.TEXT, text="amala is life", source_url="https://blog.example/")

    result = ExtractionNormalizer(oracle).normalize(candidate, interactive=False)

    assert result.status is NormalizationStatus.COMPLETE
    assert result.record.source == "web_harvest"
    assert result.record.source_kind is SourceKind.TEXT
    assert result.record.source_url == "https://blog.example/"


def test_oracle_failures_degrade_after_retries():
    oracle = DummyOracle([ExtractionTimeout("slow"), ExtractionFailure("bad json"), ExtractionTimeout("slow")])
    normalizer = ExtractionNormalizer(oracle, max_clarify_rounds=3)

    result = normalizer.normalize("Amala Skye, Ikeja")

    assert len(oracle.calls) == 3
    assert result.status is NormalizationStatus.COMPLETE
    assert result.record.confidence == 0.0
    assert result.record.missing_fields == ["name", "address", "coordinates", "category", "service_type"]


def test_oracle_recovers_after_one_failure():
    oracle = DummyOracle(
        [
            ExtractionTimeout("slow"),
            OracleResult(fields={"name": "Amala Skye"}, confidence=0.7, suggested_action=SuggestedAction.ACCEPT),
        ]
    )
    result = ExtractionNormalizer(oracle).normalize("Amala Skye")

    assert len(oracle.calls) == 2
    assert result.record.name == "Amala Skye"


@pytest.mark.parametrize(
    "options, categories, expected",
    [
        ({"dine_in": True, "takeaway": True}, [], "both"),
        ({"dine_in": True}, [], "dine-in"),
        ({"delivery": True}, [], "takeaway"),
        ({}, ["meal_takeaway"], "takeaway"),
        ({}, ["restaurant"], "dine-in"),
        ({}, ["lodging"], None),
    ],
)
def test_infer_service_type(options, categories, expected):
    assert normalize.infer_service_type(options, categories) == expected


def test_field_validators():
    assert normalize.clamp_rating("0.5") == 1.0
    assert normalize.clamp_rating("bad") is None
    assert normalize.normalize_price_range("$$$", 1) == "$$$"
    assert normalize.normalize_price_range("cheap", 1) == "$"
    assert normalize.normalize_service_type("Dine In") == "dine-in"
    assert normalize.normalize_service_type("take-out") == "takeaway"
    assert normalize.normalize_service_type("drive-thru") is None
    assert normalize.normalize_hours({"Monday": {"open": "25:00", "close": "10:00"}}) == {}
