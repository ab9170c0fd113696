"""
conftest.py
-----------
LabResults — Lab Order Result Entry — Shared test fixtures
----------------------------------------------------------
REST-shaped sample data (order, concepts, encounter, obs) and a client
whose remote calls are replaced by AsyncMocks, so no OpenMRS is needed.

Project: LabResults — Lab Order Result Entry
"""

import os
import sys
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from openmrs_client import OpenMRSClient  # noqa: E402
from schemas import ConceptSchema, Order  # noqa: E402

from tests.sample_data import (  # noqa: E402
    BASE_URL,
    EXISTING_GROUP_OBS_JSON,
    NUMERIC_CONCEPT_JSON,
    ORDER_JSON,
    SET_CONCEPT_JSON,
    encounter_json,
)


@pytest.fixture
def order():
    return Order.model_validate(ORDER_JSON)


@pytest.fixture
def set_schema():
    return ConceptSchema.model_validate(SET_CONCEPT_JSON)


@pytest.fixture
def numeric_schema():
    return ConceptSchema.model_validate(NUMERIC_CONCEPT_JSON)


@pytest.fixture
def fake_client():
    """OpenMRSClient whose remote calls are AsyncMocks; URL helpers stay real."""
    client = OpenMRSClient(base_url=BASE_URL, username="u", password="p", timeout=5)
    client.get_concept = AsyncMock(return_value=SET_CONCEPT_JSON)
    client.get_encounter = AsyncMock(return_value=encounter_json())
    client.get_observation = AsyncMock(return_value=EXISTING_GROUP_OBS_JSON)
    client.get_order = AsyncMock(return_value=ORDER_JSON)
    client.save_encounter_observations = AsyncMock(return_value={"uuid": "e1"})
    client.update_fulfiller_details = AsyncMock(return_value={})
    client.post_order = AsyncMock(return_value={"uuid": "o2", "action": "DISCONTINUE"})
    return client


class FakeWorkspace:
    """Records close calls and the registered close guard."""

    def __init__(self):
        self.guard = None
        self.closed = False
        self.closed_with_saved_changes = False

    def prompt_before_closing(self, guard):
        self.guard = guard

    def close_with_saved_changes(self):
        self.closed = True
        self.closed_with_saved_changes = True

    def close(self):
        self.closed = True


@pytest.fixture
def workspace():
    return FakeWorkspace()
