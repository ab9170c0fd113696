"""
schemas.py
----------
LabResults — Lab Order Result Entry — Pydantic Data Contracts
-------------------------------------------------------------
Pydantic v2 models that act as the data contract between the OpenMRS REST
representations and the result-entry core.

Inbound (parsed from REST responses):

    ConceptSchema   Concept of the ordered test: datatype, set flag, ordered
                    set members, coded answers and numeric ranges.
    Order           The lab order being resulted.  Frozen for the session.
    Encounter       Read-only snapshot of the order's encounter and its obs.
    Observation     A previously recorded observation (edit-mode seed).

Outbound (built by lab_results.payload_builder):

    ObservationPayload   Leaf ``{concept, status, order, value}`` or group
                         ``{concept, status, order, groupMembers}``.

Datatype policy
---------------
OpenMRS reports concept datatypes by display name.  They are folded into the
closed ``ConceptDatatype`` enum; anything not listed (N/A, Document, Complex,
Structured-Numeric, Rule, or a name this module has never seen) becomes
``UNSUPPORTED`` so callers always match on a known member.

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

FINAL_STATUS = "FINAL"


class ConceptDatatype(str, Enum):
    """Value datatypes a concept can report."""

    NUMERIC = "Numeric"
    TEXT = "Text"
    CODED = "Coded"
    BOOLEAN = "Boolean"
    DATE = "Date"
    DATETIME = "Datetime"
    TIME = "Time"
    UNSUPPORTED = "N/A"

    @classmethod
    def from_display(cls, display: Optional[str]) -> "ConceptDatatype":
        """Map an OpenMRS datatype display name onto the enum (case-insensitive)."""
        if not display:
            return cls.UNSUPPORTED
        wanted = display.strip().lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        logger.debug("schemas: datatype %r treated as UNSUPPORTED", display)
        return cls.UNSUPPORTED


class _RestModel(BaseModel):
    """Base for models parsed from OpenMRS REST JSON (camelCase, extra ignored)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Ref(_RestModel):
    """A ``{uuid, display}`` reference to another resource."""

    uuid: str
    display: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_uuid(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"uuid": data}
        return data


# ---------------------------------------------------------------------------
# ConceptSchema
# ---------------------------------------------------------------------------

class ConceptSchema(_RestModel):
    """
    Schema of a concept as discovered at runtime.

    A leaf concept carries a value datatype and no members.  A set concept
    carries an ordered list of member schemas, each with its own datatype.
    Numeric range bounds are ``None`` when the concept does not define them.
    """

    uuid: str
    display: str = ""
    datatype: ConceptDatatype = ConceptDatatype.UNSUPPORTED
    datatype_name: Optional[str] = Field(default=None, alias="datatypeName")
    is_set: bool = Field(default=False, alias="set")
    set_members: List["ConceptSchema"] = Field(default_factory=list, alias="setMembers")
    answers: List[Ref] = Field(default_factory=list)
    units: Optional[str] = None
    hi_normal: Optional[float] = Field(default=None, alias="hiNormal")
    low_normal: Optional[float] = Field(default=None, alias="lowNormal")
    hi_critical: Optional[float] = Field(default=None, alias="hiCritical")
    low_critical: Optional[float] = Field(default=None, alias="lowCritical")
    hi_absolute: Optional[float] = Field(default=None, alias="hiAbsolute")
    low_absolute: Optional[float] = Field(default=None, alias="lowAbsolute")

    @model_validator(mode="before")
    @classmethod
    def _keep_datatype_name(cls, data: Any) -> Any:
        # The enum folds Document, Complex, ... into UNSUPPORTED; keep the name for messages.
        if not isinstance(data, dict) or "datatypeName" in data or "datatype_name" in data:
            return data
        raw = data.get("datatype")
        if isinstance(raw, dict):
            raw = raw.get("display") or raw.get("name")
        elif isinstance(raw, ConceptDatatype):
            raw = raw.value
        if not raw:
            return data
        return {**data, "datatype_name": str(raw)}

    @field_validator("datatype", mode="before")
    @classmethod
    def _datatype_from_rest(cls, value: Any) -> ConceptDatatype:
        # REST returns {"uuid": ..., "display": "Numeric"}; tests may pass a name.
        if isinstance(value, ConceptDatatype):
            return value
        if isinstance(value, dict):
            value = value.get("display") or value.get("name")
        return ConceptDatatype.from_display(value)

    @field_validator("set_members", "answers", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def is_group(self) -> bool:
        """True when values are entered per member rather than on the concept."""
        return self.is_set and len(self.set_members) > 0

    @property
    def value_fields(self) -> List["ConceptSchema"]:
        """Schemas that receive a form value: the members of a group, else the concept."""
        return list(self.set_members) if self.is_group else [self]

    @property
    def answer_uuids(self) -> List[str]:
        return [answer.uuid for answer in self.answers]


# ---------------------------------------------------------------------------
# Order / Encounter / Observation
# ---------------------------------------------------------------------------

class Order(_RestModel):
    """
    Lab order being resulted.  Supplied by the order list and never mutated
    while results are entered.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    uuid: str
    order_number: str = Field(default="", alias="orderNumber")
    patient: Ref
    encounter: Ref
    concept: Ref
    care_setting: Ref = Field(alias="careSetting")
    orderer: Ref


class Observation(_RestModel):
    """Previously recorded observation, used to seed edit mode."""

    uuid: str
    concept: Optional[Ref] = None
    value: Any = None
    group_members: List["Observation"] = Field(default_factory=list, alias="groupMembers")

    @field_validator("group_members", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class Encounter(_RestModel):
    """Read-only encounter snapshot with its observation list."""

    uuid: str
    obs: List[Observation] = Field(default_factory=list)

    @field_validator("obs", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    def find_observation(self, concept_uuid: str) -> Optional[Observation]:
        """Return the first observation recorded against *concept_uuid*, if any."""
        for obs in self.obs:
            if obs.concept is not None and obs.concept.uuid == concept_uuid:
                return obs
        return None


# ---------------------------------------------------------------------------
# ObservationPayload (outbound)
# ---------------------------------------------------------------------------

class ObservationPayload(BaseModel):
    """
    Observation to be written against the order's encounter.

    ``value`` and ``group_members`` are mutually exclusive.  ``value`` may be
    absent on a leaf whose datatype is UNSUPPORTED; value validation rejects
    such a payload before it is submitted.
    """

    model_config = ConfigDict(populate_by_name=True)

    concept: str
    status: Literal["FINAL"] = FINAL_STATUS
    order: str
    value: Any = None
    group_members: Optional[List["ObservationPayload"]] = Field(
        default=None, alias="groupMembers"
    )

    @model_validator(mode="after")
    def _value_xor_members(self) -> "ObservationPayload":
        if self.group_members is not None and self.value is not None:
            raise ValueError("an observation carries either a value or groupMembers, not both")
        return self

    @property
    def is_group(self) -> bool:
        return self.group_members is not None

    def to_rest(self) -> dict[str, Any]:
        """
        Serialise to the OpenMRS REST shape (references as ``{"uuid": ...}``).
        A missing value is omitted rather than sent as ``null``.
        """
        body: dict[str, Any] = {
            "concept": {"uuid": self.concept},
            "status": self.status,
            "order": {"uuid": self.order},
        }
        if self.group_members is not None:
            body["groupMembers"] = [member.to_rest() for member in self.group_members]
        elif self.value is not None:
            body["value"] = self.value
        return body


ConceptSchema.model_rebuild()
Observation.model_rebuild()
ObservationPayload.model_rebuild()
