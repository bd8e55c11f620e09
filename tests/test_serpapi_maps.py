import pytest

from poi_discovery.core.models import Coordinates
from poi_discovery.vendors import serpapi_maps


def test_build_params_requires_query_and_key():
    with pytest.raises(ValueError):
        serpapi_maps.build_serpapi_params("  ", "key")
    with pytest.raises(serpapi_maps.SerpApiError):
        serpapi_maps.build_serpapi_params("amala", "")

    params = serpapi_maps.build_serpapi_params(" amala in Lagos ", "key", ll="@6.5,3.3,14z")
    assert params["engine"] == "google_maps"
    assert params["q"] == "amala in Lagos"
    assert params["ll"] == "@6.5,3.3,14z"


def test_parse_local_results():
    data = {
        "local_results": [
            {
                "title": "Amala Shitta",
                "address": "Shitta, Surulere, Lagos",
                "gps_coordinates": {"latitude": 6.5, "longitude": 3.35},
                "rating": "4.2",
                "type": "Nigerian restaurant",
                "service_options": {"dine_in": True, "takeout": True},
                "place_id": "ChIJ123",
                "thumbnail": "https://img.example/1.jpg",
            },
            {"title": ""},
            "garbage",
        ]
    }

    candidates = serpapi_maps.parse_serpapi_maps(data)

    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate.source == serpapi_maps.SOURCE_NAME
    assert candidate.name == "Amala Shitta"
    assert candidate.coordinates == Coordinates(6.5, 3.35)
    assert candidate.rating == 4.2
    assert candidate.categories == ["Nigerian restaurant"]
    assert candidate.service_options == {"dine_in": True, "takeaway": True}
    assert candidate.external_id == "ChIJ123"
    assert candidate.images == ["https://img.example/1.jpg"]


def test_parse_nested_and_place_results():
    nested = {"local_results": {"places": [{"title": "Bukka Hut"}]}}
    assert [c.name for c in serpapi_maps.parse_serpapi_maps(nested)] == ["Bukka Hut"]

    single = {"place_results": {"title": "Amala Skye"}}
    assert [c.name for c in serpapi_maps.parse_serpapi_maps(single)] == ["Amala Skye"]

    assert serpapi_maps.parse_serpapi_maps(None) == []


def test_fetch_retries_then_raises(monkeypatch):
    attempts = []

    class FailingSearch:
        def __init__(self, params):
            attempts.append(params)

        def get_dict(self):
            return {"error": "Invalid API key"}

    monkeypatch.setattr(serpapi_maps, "GoogleSearch", FailingSearch)

    with pytest.raises(serpapi_maps.SerpApiError):
        serpapi_maps.fetch_from_serpapi("amala", "key", sleep=lambda _: None)

    assert len(attempts) == serpapi_maps.RETRY_LIMIT + 1


def test_fetch_returns_payload(monkeypatch):
    class DummySearch:
        def __init__(self, params):
            self.params = params

        def get_dict(self):
            return {"local_results": [], "search_parameters": {"q": self.params["q"]}}

    monkeypatch.setattr(serpapi_maps, "GoogleSearch", DummySearch)

    data = serpapi_maps.fetch_from_serpapi("amala", "key", sleep=lambda _: None)
    assert data["search_parameters"]["q"] == "amala"
