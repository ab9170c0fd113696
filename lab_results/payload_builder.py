"""
payload_builder.py
------------------
LabResults — Lab Order Result Entry — Observation Payload Builder
-----------------------------------------------------------------
Pure transformation from {concept schema, order, current form values} to
the observation payload written against the order's encounter.

Shape rules:

  Set concept with members
      One group payload on the schema's concept, whose ``groupMembers`` are
      leaf payloads, one per member, in member order.  Each member value is
      read from ``values[member.uuid]``.

  Anything else (leaf)
      One leaf payload on the order's concept with the value read from
      ``values[schema.uuid]``.

Value encoding per datatype (``encode_value``):

    NUMERIC, TEXT, BOOLEAN, DATE, DATETIME, TIME   verbatim
    CODED                                          {"uuid": <answer uuid>}
    UNSUPPORTED                                    no value

The builder never raises for a missing or unsupported value; the value is
simply left out.  ``validate_values`` is the gate that rejects such input
with field-level errors before anything is submitted.

Public API:
    encode_value()               Encode one raw form value for a datatype.
    build_observation_payload()  Build the ObservationPayload.
    build_obs_envelope()         Wrap it as ``{"obs": [...]}`` for transport.
    validate_values()            Raise ValidationGap for values that cannot be saved.

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping, Optional

from schemas import ConceptDatatype, ConceptSchema, ObservationPayload, Order
from lab_results.exceptions import ValidationGap

logger = logging.getLogger(__name__)

_VERBATIM_DATATYPES = frozenset({
    ConceptDatatype.NUMERIC,
    ConceptDatatype.TEXT,
    ConceptDatatype.BOOLEAN,
    ConceptDatatype.DATE,
    ConceptDatatype.DATETIME,
    ConceptDatatype.TIME,
})

_BOOLEAN_STRINGS = frozenset({"true", "false", "1", "0"})


def _is_blank(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


# ---------------------------------------------------------------------------
# Value encoding
# ---------------------------------------------------------------------------

def encode_value(datatype: ConceptDatatype, raw: Any) -> Any:
    """
    Encode a raw form value for *datatype*.

    Args:
        datatype: Datatype of the concept receiving the value.
        raw:      Value as entered (string, number, bool or selected answer uuid).

    Returns:
        The value to send, or ``None`` when there is nothing to send
        (blank input or an UNSUPPORTED datatype).
    """
    if datatype in _VERBATIM_DATATYPES:
        return raw
    if datatype is ConceptDatatype.CODED:
        if _is_blank(raw):
            return None
        return {"uuid": raw}
    if datatype is ConceptDatatype.UNSUPPORTED:
        return None
    raise AssertionError(f"unhandled datatype {datatype!r}")


# ---------------------------------------------------------------------------
# Payload construction
# ---------------------------------------------------------------------------

def _leaf(concept_uuid: str, order_uuid: str, value: Any) -> ObservationPayload:
    return ObservationPayload(concept=concept_uuid, order=order_uuid, value=value)


def build_observation_payload(
    schema: ConceptSchema,
    order: Order,
    values: Mapping[str, Any],
) -> ObservationPayload:
    """
    Build the observation payload for *order* from the current form values.

    Deterministic and free of I/O: identical inputs always produce equal
    payloads.

    Args:
        schema: Schema of the order's concept.
        order:  Order being resulted.
        values: Form values keyed by concept uuid.

    Returns:
        A group payload for a set concept with members, else a leaf payload.
    """
    if schema.is_group:
        members: List[ObservationPayload] = [
            _leaf(member.uuid, order.uuid, encode_value(member.datatype, values.get(member.uuid)))
            for member in schema.set_members
        ]
        return ObservationPayload(
            concept=schema.uuid,
            order=order.uuid,
            group_members=members,
        )

    return _leaf(
        order.concept.uuid,
        order.uuid,
        encode_value(schema.datatype, values.get(schema.uuid)),
    )


def build_obs_envelope(
    schema: ConceptSchema,
    order: Order,
    values: Mapping[str, Any],
) -> Dict[str, Any]:
    """Build the payload and wrap it in the ``{"obs": [...]}`` transport envelope."""
    payload = build_observation_payload(schema, order, values)
    return {"obs": [payload.to_rest()]}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _numeric_error(field: ConceptSchema, raw: Any) -> Optional[str]:
    try:
        number = float(raw)
    except (TypeError, ValueError):
        return f"'{raw}' is not a number"
    if not math.isfinite(number):
        return f"'{raw}' is not a number"
    if field.low_absolute is not None and number < field.low_absolute:
        return f"{number:g} is below the minimum of {field.low_absolute:g}"
    if field.hi_absolute is not None and number > field.hi_absolute:
        return f"{number:g} is above the maximum of {field.hi_absolute:g}"
    return None


def _field_error(field: ConceptSchema, raw: Any) -> Optional[str]:
    datatype = field.datatype
    if datatype is ConceptDatatype.UNSUPPORTED:
        return f"results of datatype '{field.datatype_name or datatype.value}' cannot be entered"
    if _is_blank(raw):
        return "a value is required"
    if datatype is ConceptDatatype.NUMERIC:
        return _numeric_error(field, raw)
    if datatype is ConceptDatatype.CODED:
        if field.answers and raw not in field.answer_uuids:
            return f"'{raw}' is not one of the allowed answers"
        return None
    if datatype is ConceptDatatype.BOOLEAN:
        if isinstance(raw, bool) or str(raw).strip().lower() in _BOOLEAN_STRINGS:
            return None
        return f"'{raw}' is not true or false"
    return None


def validate_values(schema: ConceptSchema, values: Mapping[str, Any]) -> None:
    """
    Check every value the payload would carry.

    Raises:
        ValidationGap: with one entry per offending concept uuid.
    """
    errors: Dict[str, str] = {}
    for field in schema.value_fields:
        reason = _field_error(field, values.get(field.uuid))
        if reason:
            errors[field.uuid] = reason

    if errors:
        logger.info("payload_builder: %d invalid field(s) for concept %s", len(errors), schema.uuid)
        raise ValidationGap(errors)
