import pytest

from sverify.signals import (
    DEFAULT_SCHEMA,
    SignalCategory,
    SignalKind,
    SignalSchema,
    SignalSpec,
    SignalValidationError,
)

from conftest import CLEAN_CHECKS


def test_default_partition():
    assert DEFAULT_SCHEMA.critical_names == [
        "isBot", "hasWebdriver", "hasSelenium", "hasHeadless", "hasAutomation"
    ]
    assert "isEmbedded" in DEFAULT_SCHEMA.secondary_names
    assert "screenWidth" in DEFAULT_SCHEMA.secondary_names


def test_parse_full_report_in_schema_order():
    shuffled = dict(reversed(list(CLEAN_CHECKS.items())))
    report = DEFAULT_SCHEMA.parse(shuffled)
    names = [s.name for s in report]
    assert names == [s.name for s in DEFAULT_SCHEMA if s.name in CLEAN_CHECKS]
    assert report.get("screenWidth").value == 1920.0


def test_unknown_signals_ignored():
    report = DEFAULT_SCHEMA.parse({"isBot": False, "batteryLevel": 0.5})
    assert len(report) == 1
    assert report.get("batteryLevel") is None


def test_missing_and_null_signals_are_neutral():
    report = DEFAULT_SCHEMA.parse({"isBot": None, "hasAdBlock": False})
    assert report.to_dict() == {"hasAdBlock": False}


def test_empty_report_is_valid():
    assert len(DEFAULT_SCHEMA.parse({})) == 0


@pytest.mark.parametrize("raw", [None, "checks", [True, False], 3])
def test_report_must_be_an_object(raw):
    with pytest.raises(SignalValidationError) as exc:
        DEFAULT_SCHEMA.parse(raw)
    assert exc.value.field == "browserChecks"


@pytest.mark.parametrize("value", ["true", 1, 0, 1.0])
def test_boolean_signal_rejects_non_boolean(value):
    with pytest.raises(SignalValidationError) as exc:
        DEFAULT_SCHEMA.parse({"hasWebdriver": value})
    assert exc.value.field == "hasWebdriver"


@pytest.mark.parametrize("value", [True, "1920", -1, 1e9, 10 ** 400, float("inf"), float("nan")])
def test_numeric_signal_rejects_malformed(value):
    with pytest.raises(SignalValidationError) as exc:
        DEFAULT_SCHEMA.parse({"screenWidth": value})
    assert exc.value.field == "screenWidth"


def test_numeric_plausibility():
    spec = DEFAULT_SCHEMA.spec("screenWidth")
    assert spec.is_suspicious(0.0)
    assert not spec.is_suspicious(1024.0)
    assert DEFAULT_SCHEMA.spec("deviceMemory").is_suspicious(0.125)


def test_boolean_suspicious_polarity():
    assert DEFAULT_SCHEMA.spec("hasAdBlock").is_suspicious(True)
    assert not DEFAULT_SCHEMA.spec("hasAdBlock").is_suspicious(False)
    assert DEFAULT_SCHEMA.spec("isCleanLoad").is_suspicious(False)
    assert not DEFAULT_SCHEMA.spec("isCleanLoad").is_suspicious(True)


def test_schema_rejects_duplicates_and_numeric_critical():
    flag = SignalSpec("a", SignalCategory.SECONDARY)
    with pytest.raises(ValueError):
        SignalSchema([flag, flag])
    with pytest.raises(ValueError):
        SignalSchema([SignalSpec("n", SignalCategory.CRITICAL, SignalKind.NUMBER)])


def test_recategorize_moves_signals():
    schema = DEFAULT_SCHEMA.recategorize(critical=["isBot", "isIncognito"])
    assert schema.critical_names == ["isBot", "isIncognito"]
    assert schema.spec("hasWebdriver").category is SignalCategory.SECONDARY
    # default schema untouched
    assert "hasWebdriver" in DEFAULT_SCHEMA.critical_names


def test_recategorize_secondary_and_extra():
    extra = SignalSpec.from_dict({"name": "hasTouch", "suspicious_when": False})
    schema = DEFAULT_SCHEMA.recategorize(secondary=["hasSelenium"], extra_secondary=[extra])
    assert "hasSelenium" not in schema.critical_names
    assert "hasTouch" in schema.secondary_names
    assert schema.parse({"hasTouch": False}).get("hasTouch").value is False


def test_recategorize_unknown_name():
    with pytest.raises(ValueError):
        DEFAULT_SCHEMA.recategorize(critical=["isRobot"])
    with pytest.raises(ValueError):
        DEFAULT_SCHEMA.recategorize(secondary=["isRobot"])


def test_numeric_spec_from_dict():
    spec = SignalSpec.from_dict({
        "name": "colorDepth", "kind": "number", "maximum": 64, "plausible_min": 8
    })
    assert spec.kind is SignalKind.NUMBER
    assert spec.category is SignalCategory.SECONDARY
    assert spec.is_suspicious(4.0)
    with pytest.raises(SignalValidationError):
        spec.coerce(128)


def test_spec_from_dict_requires_name():
    with pytest.raises(ValueError):
        SignalSpec.from_dict({"kind": "boolean"})
