"""
test_payload_builder.py
-----------------------
LabResults — Lab Order Result Entry — Tests for payload_builder.py
------------------------------------------------------------------
Tests cover:
    - leaf payloads for Numeric / Text / Coded concepts
    - group payloads: member count, order and per-member encoding
    - the vitals-panel example (Numeric + Coded members)
    - determinism of repeated builds
    - unsupported datatypes never raise and never carry a value
    - validate_values field-level errors, including NaN and infinity

Run:
    pytest tests/test_payload_builder.py -v --tb=short

Project: LabResults — Lab Order Result Entry
"""

import pytest

from schemas import ConceptDatatype, ConceptSchema
from lab_results.exceptions import ValidationGap
from lab_results.payload_builder import (
    build_obs_envelope,
    build_observation_payload,
    encode_value,
    validate_values,
)


def _leaf_schema(datatype, **extra):
    return ConceptSchema(uuid="c1", display="Test", datatype=datatype, **extra)


# ── encode_value ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("datatype, raw, expected", [
    (ConceptDatatype.NUMERIC, "98.6", "98.6"),
    (ConceptDatatype.TEXT, "trace amounts", "trace amounts"),
    (ConceptDatatype.CODED, "opt-A", {"uuid": "opt-A"}),
    (ConceptDatatype.BOOLEAN, True, True),
    (ConceptDatatype.DATE, "2026-10-19", "2026-10-19"),
    (ConceptDatatype.UNSUPPORTED, "anything", None),
    (ConceptDatatype.CODED, "", None),
])
def test_encode_value(datatype, raw, expected):
    """Each datatype has an explicit encoding."""
    assert encode_value(datatype, raw) == expected


# ── Leaf payloads ─────────────────────────────────────────────────────────────

@pytest.mark.parametrize("datatype, raw, expected", [
    ("Numeric", "12.5", "12.5"),
    ("Text", "clear", "clear"),
    ("Coded", "opt-B", {"uuid": "opt-B"}),
])
def test_leaf_payload(order, datatype, raw, expected):
    """A leaf concept yields one payload with a value and no group members."""
    payload = build_observation_payload(_leaf_schema(datatype), order, {"c1": raw})
    assert payload.is_group is False
    assert payload.group_members is None
    assert payload.value == expected
    assert payload.concept == order.concept.uuid
    assert payload.status == "FINAL"
    assert payload.order == "o1"


def test_leaf_envelope_shape(order):
    """The transport envelope wraps a single REST-shaped observation."""
    envelope = build_obs_envelope(_leaf_schema("Numeric"), order, {"c1": "7"})
    assert envelope == {
        "obs": [{
            "concept": {"uuid": "c1"},
            "status": "FINAL",
            "order": {"uuid": "o1"},
            "value": "7",
        }]
    }


# ── Group payloads ────────────────────────────────────────────────────────────

def test_vitals_panel_example(order, set_schema):
    """Set c1 with {m1: Numeric, m2: Coded} builds the expected group payload."""
    payload = build_observation_payload(set_schema, order, {"m1": "98.6", "m2": "opt-A"})
    assert payload.model_dump(by_alias=True, exclude_none=True) == {
        "concept": "c1",
        "status": "FINAL",
        "order": "o1",
        "groupMembers": [
            {"concept": "m1", "status": "FINAL", "order": "o1", "value": "98.6"},
            {"concept": "m2", "status": "FINAL", "order": "o1", "value": {"uuid": "opt-A"}},
        ],
    }


def test_group_member_count_and_order(order):
    """N members produce N group members in schema order."""
    members = [
        {"uuid": f"m{i}", "datatype": dt}
        for i, dt in enumerate(["Text", "Numeric", "Coded", "Text", "Numeric"])
    ]
    schema = ConceptSchema.model_validate({"uuid": "c1", "set": True, "setMembers": members})
    values = {"m0": "a", "m1": "1", "m2": "yes", "m3": "b", "m4": "2"}

    payload = build_observation_payload(schema, order, values)

    assert payload.value is None
    assert [m.concept for m in payload.group_members] == ["m0", "m1", "m2", "m3", "m4"]
    assert [m.value for m in payload.group_members] == ["a", "1", {"uuid": "yes"}, "b", "2"]


def test_group_envelope_is_rest_shaped(order, set_schema):
    """Group members are serialised with {uuid} references too."""
    envelope = build_obs_envelope(set_schema, order, {"m1": "98.6", "m2": "opt-A"})
    group = envelope["obs"][0]
    assert "value" not in group
    assert group["groupMembers"][1] == {
        "concept": {"uuid": "m2"},
        "status": "FINAL",
        "order": {"uuid": "o1"},
        "value": {"uuid": "opt-A"},
    }


def test_build_is_deterministic(order, set_schema):
    """Two builds with the same inputs are structurally identical."""
    values = {"m1": "98.6", "m2": "opt-A"}
    first = build_observation_payload(set_schema, order, values)
    second = build_observation_payload(set_schema, order, values)
    assert first == second
    assert first.to_rest() == second.to_rest()


def test_build_does_not_mutate_values(order, set_schema):
    values = {"m1": "98.6", "m2": "opt-A"}
    build_observation_payload(set_schema, order, values)
    assert values == {"m1": "98.6", "m2": "opt-A"}


# ── Unsupported datatypes ─────────────────────────────────────────────────────

def test_unsupported_leaf_builds_without_value(order):
    """An N/A or unknown datatype never raises and carries no value."""
    schema = _leaf_schema("Complex")
    payload = build_observation_payload(schema, order, {"c1": "file.png"})
    assert payload.value is None
    assert "value" not in payload.to_rest()


def test_missing_member_value_builds_without_value(order, set_schema):
    """A member with no entered value is built without a value."""
    payload = build_observation_payload(set_schema, order, {"m1": "98.6"})
    assert payload.group_members[1].value is None


# ── validate_values ───────────────────────────────────────────────────────────

def test_validate_accepts_complete_values(set_schema):
    validate_values(set_schema, {"m1": "98.6", "m2": "opt-A"})


def test_validate_reports_each_bad_field(set_schema):
    """Missing and out-of-range values are reported per concept uuid."""
    with pytest.raises(ValidationGap) as exc_info:
        validate_values(set_schema, {"m1": "200", "m2": ""})
    errors = exc_info.value.field_errors
    assert set(errors) == {"m1", "m2"}
    assert "above the maximum" in errors["m1"]
    assert errors["m2"] == "a value is required"


@pytest.mark.parametrize("raw, fragment", [
    ("abc", "not a number"),
    ("-1", "below the minimum"),
    ("26", "above the maximum"),
    ("nan", "not a number"),
    ("NaN", "not a number"),
    ("inf", "not a number"),
    ("-Infinity", "not a number"),
])
def test_validate_numeric(numeric_schema, raw, fragment):
    with pytest.raises(ValidationGap) as exc_info:
        validate_values(numeric_schema, {"c1": raw})
    assert fragment in exc_info.value.field_errors["c1"]


def test_validate_rejects_unknown_coded_answer(set_schema):
    with pytest.raises(ValidationGap) as exc_info:
        validate_values(set_schema, {"m1": "98.6", "m2": "opt-Z"})
    assert "allowed answers" in exc_info.value.field_errors["m2"]


def test_validate_rejects_unsupported_datatype():
    """Unsupported datatypes are rejected before submission."""
    with pytest.raises(ValidationGap) as exc_info:
        validate_values(_leaf_schema("N/A"), {"c1": "x"})
    assert "cannot be entered" in exc_info.value.field_errors["c1"]


def test_unsupported_datatype_error_names_the_datatype():
    schema = ConceptSchema.model_validate({
        "uuid": "c1",
        "display": "Scan report",
        "datatype": {"uuid": "dt-doc", "display": "Document"},
    })
    with pytest.raises(ValidationGap) as exc_info:
        validate_values(schema, {"c1": "x"})
    assert exc_info.value.field_errors["c1"] == "results of datatype 'Document' cannot be entered"


@pytest.mark.parametrize("raw", [True, "false", "1"])
def test_validate_boolean_accepts(raw):
    validate_values(_leaf_schema("Boolean"), {"c1": raw})


def test_validate_boolean_rejects_other_text():
    with pytest.raises(ValidationGap):
        validate_values(_leaf_schema("Boolean"), {"c1": "maybe"})
