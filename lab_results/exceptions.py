"""
exceptions.py
-------------
LabResults — Lab Order Result Entry — Domain Errors
---------------------------------------------------
Every error raised by the core derives from ``LabResultsError`` so the HTTP
surface can map them in one place.  Transport failures stay as
``openmrs_client.OpenMRSAPIError`` and are wrapped where they cross into
the core.

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

from typing import Dict, Optional


class LabResultsError(Exception):
    """Base class for result-entry errors."""


class SchemaLoadError(LabResultsError):
    """The concept schema could not be loaded; the form cannot be rendered or submitted."""

    def __init__(self, concept_uuid: str, message: str) -> None:
        self.concept_uuid = concept_uuid
        self.message = message
        super().__init__(f"Could not load concept {concept_uuid}: {message}")


class ConceptNotFound(SchemaLoadError):
    """The server has no concept with the requested uuid."""

    def __init__(self, concept_uuid: str) -> None:
        super().__init__(concept_uuid, "concept not found")


class EncounterLoadError(LabResultsError):
    """The order's encounter could not be loaded.  Non-fatal: the form stays in create mode."""

    def __init__(self, encounter_uuid: str, message: str) -> None:
        self.encounter_uuid = encounter_uuid
        self.message = message
        super().__init__(f"Could not load encounter {encounter_uuid}: {message}")


class ValidationGap(LabResultsError):
    """
    One or more form values cannot be submitted.

    Attributes:
        field_errors: concept uuid -> human-readable reason.
    """

    def __init__(self, field_errors: Dict[str, str]) -> None:
        self.field_errors = dict(field_errors)
        detail = "; ".join(f"{uuid}: {reason}" for uuid, reason in self.field_errors.items())
        super().__init__(f"Invalid lab result values: {detail}")


class FormNotReady(LabResultsError):
    """A payload was requested before the schema (and initial values) finished loading."""


class SubmissionStepFailure(LabResultsError):
    """
    One of the sequential submission calls failed.

    Attributes:
        step:    Name of the failed step (``SubmissionStep.value``).
        message: Underlying failure message shown to the user.
        cause:   Original exception, if any.
    """

    def __init__(self, step: str, message: str, cause: Optional[BaseException] = None) -> None:
        self.step = step
        self.message = message
        self.cause = cause
        super().__init__(message)


class ObservationLoadError(LabResultsError):
    """The existing observation could not be fetched; edit mode starts without initial values."""

    def __init__(self, obs_uuid: str, message: str) -> None:
        self.obs_uuid = obs_uuid
        self.message = message
        super().__init__(f"Could not load observation {obs_uuid}: {message}")
