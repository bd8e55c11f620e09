import argparse
import json
import types

import pytest

from poi_discovery.core.config import ConfigError
from poi_discovery.core.errors import PersistenceUnavailable
from poi_discovery.core.models import Scope, ScopeKind
from poi_discovery.jobs import run_discovery


class DummySummary:
    def to_dict(self):
        return {"run_id": "r1", "counts": {"saved": 0}}


class DummyOrchestrator:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def run_discovery(self, scope, sources=None):
        self.calls.append((scope, sources))
        if self.error:
            raise self.error
        return DummySummary()


class DummyWorkers:
    def __init__(self):
        self.events = []

    def start(self):
        self.events.append("start")

    def wait_idle(self, timeout):
        self.events.append(("wait", timeout))
        return True

    def stop(self):
        self.events.append("stop")


def fake_services(orchestrator, workers=None):
    queue = types.SimpleNamespace(stats=lambda: {"active": 0})
    return types.SimpleNamespace(orchestrator=orchestrator, workers=workers or DummyWorkers(), queue=queue)


def test_build_parser_defaults():
    parser = run_discovery.build_parser()
    args = parser.parse_args(["--source", "google_places", "--source", "web_harvest"])

    assert isinstance(parser, argparse.ArgumentParser)
    assert args.scope == "global"
    assert args.sources == ["google_places", "web_harvest"]
    assert args.drain is False


def test_run_discovery_job_drains_queue(monkeypatch):
    orchestrator = DummyOrchestrator()
    workers = DummyWorkers()
    monkeypatch.setattr(run_discovery, "get_settings", lambda: object())
    monkeypatch.setattr(run_discovery, "build_services", lambda settings: fake_services(orchestrator, workers))

    result = run_discovery.run_discovery_job(scope=Scope(ScopeKind.GLOBAL), drain=True, drain_timeout=9)

    assert result["queue"] == {"active": 0}
    assert workers.events == ["start", ("wait", 9), "stop"]


def test_main_prints_summary(monkeypatch, capsys):
    orchestrator = DummyOrchestrator()
    monkeypatch.setattr(run_discovery, "get_settings", lambda: object())
    monkeypatch.setattr(run_discovery, "build_services", lambda settings: fake_services(orchestrator))

    exit_code = run_discovery.main(["--scope", "country", "--name", "Nigeria", "--source", "google_places"])

    assert exit_code == 0
    assert json.loads(capsys.readouterr().out)["run_id"] == "r1"
    scope, sources = orchestrator.calls[0]
    assert scope.name == "Nigeria"
    assert sources == ["google_places"]


def test_main_rejects_scope_without_name():
    with pytest.raises(SystemExit) as excinfo:
        run_discovery.main(["--scope", "region"])
    assert excinfo.value.code == 2


def test_main_exit_codes(monkeypatch):
    def broken_settings():
        raise ConfigError("WORKER_MAX_PAGES must be a positive integer")

    monkeypatch.setattr(run_discovery, "get_settings", broken_settings)
    assert run_discovery.main([]) == run_discovery.EXIT_CONFIG_ERROR

    monkeypatch.setattr(run_discovery, "get_settings", lambda: object())
    monkeypatch.setattr(
        run_discovery,
        "build_services",
        lambda settings: fake_services(DummyOrchestrator(error=PersistenceUnavailable("refused"))),
    )
    assert run_discovery.main([]) == run_discovery.EXIT_PERSISTENCE_UNAVAILABLE
