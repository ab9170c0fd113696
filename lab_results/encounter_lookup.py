"""
encounter_lookup.py
-------------------
LabResults — Lab Order Result Entry — Encounter / Observation Lookup
--------------------------------------------------------------------
Loads the order's encounter, decides whether the user is entering new
results (create mode) or editing previously entered ones (edit mode), and
turns the matching observation into initial form values.

Edit detection rule:
    The first observation in the encounter whose concept uuid equals the
    order's concept uuid puts the form in edit mode and its uuid is
    remembered.  No match means create mode with empty initial values.

Initial values are keyed by concept uuid, the same keys the form uses:
    leaf obs     -> {obs.concept.uuid: value}
    grouped obs  -> {member.concept.uuid: member value, ...}
    coded values -> the answer concept uuid (``{"uuid": ...}`` is unwrapped)

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError

from openmrs_client import OpenMRSAPIError, OpenMRSClient
from schemas import Encounter, Observation, Order
from lab_results.exceptions import EncounterLoadError, ObservationLoadError

logger = logging.getLogger(__name__)


class FormMode(str, Enum):
    CREATE = "create"
    EDIT = "edit"


@dataclass(frozen=True)
class EditDetection:
    """Outcome of edit detection for one encounter snapshot."""

    mode: FormMode
    obs_uuid: Optional[str] = None

    @property
    def is_editing(self) -> bool:
        return self.mode is FormMode.EDIT


CREATE_MODE = EditDetection(FormMode.CREATE)


async def get_encounter(client: OpenMRSClient, encounter_uuid: str) -> Encounter:
    """
    Fetch the encounter snapshot with its observations.

    Raises:
        EncounterLoadError: on any transport or parse failure.
    """
    try:
        raw = await client.get_encounter(encounter_uuid)
        return Encounter.model_validate(raw)
    except OpenMRSAPIError as exc:
        raise EncounterLoadError(encounter_uuid, exc.message) from exc
    except ValidationError as exc:
        raise EncounterLoadError(encounter_uuid, f"malformed encounter: {exc.errors()[0]['msg']}") from exc


async def get_observation(client: OpenMRSClient, obs_uuid: str) -> Observation:
    """
    Fetch a single observation (with group members) by uuid.

    Raises:
        ObservationLoadError: on any transport or parse failure.
    """
    try:
        raw = await client.get_observation(obs_uuid)
        return Observation.model_validate(raw)
    except OpenMRSAPIError as exc:
        raise ObservationLoadError(obs_uuid, exc.message) from exc
    except ValidationError as exc:
        raise ObservationLoadError(obs_uuid, f"malformed observation: {exc.errors()[0]['msg']}") from exc


def detect_edit_mode(encounter: Optional[Encounter], order: Order) -> EditDetection:
    """
    Decide create vs edit mode for *order* against an encounter snapshot.

    Args:
        encounter: Loaded encounter, or ``None`` when it could not be loaded.
        order:     The order being resulted.

    Returns:
        ``EditDetection`` in EDIT mode with the matching obs uuid, or CREATE.
    """
    if encounter is None or not encounter.obs:
        return CREATE_MODE

    match = encounter.find_observation(order.concept.uuid)
    if match is None:
        return CREATE_MODE

    logger.info(
        "encounter_lookup: order %s already has results (obs %s), entering edit mode.",
        order.uuid,
        match.uuid,
    )
    return EditDetection(FormMode.EDIT, match.uuid)


def _form_value(value: Any) -> Any:
    # Coded answers come back as concept references; the form holds the uuid.
    if isinstance(value, dict):
        return value.get("uuid", value)
    return value


def initial_values_from_observation(obs: Observation) -> Dict[str, Any]:
    """
    Convert an existing observation into initial form values keyed by concept uuid.
    Members without a concept reference are skipped.
    """
    sources = obs.group_members if obs.group_members else [obs]
    values: Dict[str, Any] = {}
    for source in sources:
        if source.concept is None:
            continue
        values[source.concept.uuid] = _form_value(source.value)
    return values
