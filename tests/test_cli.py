import json

import pytest

import sverify.store as store_module
from sverify import cli, config
from sverify.store import TrustScore, VerificationTicket

IP = "203.0.113.5"


@pytest.fixture
def data_path(tmp_path, monkeypatch):
    path = str(tmp_path / "data.json")
    monkeypatch.setattr(store_module, "DATA_FILE", path)
    monkeypatch.setattr(store_module, "TICKET_STORE_BACKEND", "json")
    monkeypatch.setattr(config, "DATA_FILE", path)
    monkeypatch.setattr(config, "TICKET_STORE_BACKEND", "json")
    monkeypatch.setattr(config, "POLICY_PATH", "")
    return path


def seed(path):
    store_module.JsonFileTicketStore(path).upsert(
        VerificationTicket(IP, store_module.now_epoch(), TrustScore.HIGH)
    )


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_lookup(data_path, capsys):
    seed(data_path)
    assert cli.main(["lookup", IP]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["valid"] is True
    assert out["ticket"]["browserChecks"]["trustScore"] == "high"


def test_lookup_unknown(data_path, capsys):
    assert cli.main(["lookup", "198.51.100.1"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out == {"ip": "198.51.100.1", "valid": False}


def test_reset_ip(data_path, capsys):
    seed(data_path)
    assert cli.main(["reset-ip", IP]) == 0
    assert cli.main(["reset-ip", IP]) == 1
    assert "No ticket stored" in capsys.readouterr().out


def test_diagnose_creates_store(data_path, capsys):
    assert cli.main(["diagnose"]) == 0
    out = capsys.readouterr().out
    assert "created empty store" in out
    assert "[OK]   0 ticket(s) stored" in out
    with open(data_path) as f:
        assert json.load(f) == []


def test_diagnose_reports_missing_challenge_page(data_path, monkeypatch, capsys):
    monkeypatch.setattr(config, "CHALLENGE_PAGE_PATH", "/nonexistent/index.html")
    assert cli.main(["diagnose"]) == 1
    assert "[FAIL] challenge_page" in capsys.readouterr().out
