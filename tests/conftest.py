import os
import sys

import pytest
from fastapi.testclient import TestClient

# Ensure the package is importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sverify import main
from sverify.classifier import ClassifierPolicy
from sverify.gate import AdmissionGate
from sverify.store import JsonFileTicketStore

START_EPOCH = 1_760_000_000.0

CLEAN_CHECKS = {
    "isEmbedded": False,
    "isBot": False,
    "hasWebdriver": False,
    "hasSelenium": False,
    "hasHeadless": False,
    "hasAutomation": False,
    "hasAdBlock": False,
    "isIncognito": False,
    "isCleanLoad": True,
    "hasValidViewport": True,
    "hasValidTimezone": True,
    "hasValidLanguage": True,
    "hasValidCanvas": True,
    "hasValidWebGL": True,
    "isTrustedDevice": True,
    "screenWidth": 1920,
    "screenHeight": 1080,
    "hardwareConcurrency": 8,
}


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = START_EPOCH):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / "data.json"


@pytest.fixture
def store(data_file, clock):
    return JsonFileTicketStore(str(data_file), clock=clock)


@pytest.fixture
def gate(store, clock):
    return AdmissionGate(store, policy=ClassifierPolicy(), reject_threshold=2, clock=clock)


@pytest.fixture
def client(gate, monkeypatch):
    monkeypatch.setattr(main, "GATE", gate)
    return TestClient(main.app)


@pytest.fixture
def clean_checks():
    return dict(CLEAN_CHECKS)
