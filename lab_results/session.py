"""
session.py
----------
LabResults — Lab Order Result Entry — Result Entry Session
----------------------------------------------------------
One ``LabResultsSession`` per order being resulted.  It wires the concept
reader, encounter lookup, form state, payload builder and submission
orchestrator together and enforces the loading order:

    load()
      ├── concept schema ─┐   (concurrent)
      ├── encounter ──────┘
      ├── edit detection on the encounter snapshot
      ├── edit mode: fetch the existing obs -> initial values
      └── seed the form once; the session is now ready

    submit()
      ├── refuse unless ready (FormNotReady)
      ├── validate values (ValidationGap, nothing sent)
      └── SubmissionOrchestrator.submit(order, {"obs": [...]})

A schema failure is fatal for the session.  An encounter failure only means
the form starts in create mode.  ``close()`` tears the session down and
cancels any in-flight load or submission; remote effects already accepted
are not undone.

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Mapping, Optional, Set, TypeVar

from openmrs_client import OpenMRSClient
from schemas import ConceptSchema, Encounter, Order
from lab_results.cache import ResponseCache
from lab_results.concept_reader import get_concept_schema
from lab_results.encounter_lookup import (
    CREATE_MODE,
    EditDetection,
    detect_edit_mode,
    get_encounter,
    get_observation,
    initial_values_from_observation,
)
from lab_results.exceptions import (
    EncounterLoadError,
    FormNotReady,
    ObservationLoadError,
    SchemaLoadError,
)
from lab_results.form_state import FormState
from lab_results.notifications import LoggingNotifier, Notifier
from lab_results.payload_builder import build_obs_envelope, validate_values
from lab_results.submission import SubmissionOrchestrator, SubmissionRecord, SubmissionState, Workspace

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LabResultsSession:
    """
    Result entry for a single order.

    Args:
        client:    Connected ``OpenMRSClient``.
        order:     The order being resulted.
        cache:     Response cache invalidated on success; defaults to the
                   client's own cache so reads and invalidation agree.
        notifier:  Receives success / error notifications.
        workspace: Hosting workspace; gets the close guard and is closed on success.
    """

    def __init__(
        self,
        client: OpenMRSClient,
        order: Order,
        *,
        cache: Optional[ResponseCache] = None,
        notifier: Optional[Notifier] = None,
        workspace: Optional[Workspace] = None,
    ) -> None:
        self._client = client
        self.order = order
        self.workspace = workspace
        self.form = FormState()
        self.orchestrator = SubmissionOrchestrator(
            client,
            cache if cache is not None else client.cache,
            notifier if notifier is not None else LoggingNotifier(),
            workspace,
        )
        self.orchestrator.add_listener(self.form.on_submission_state)

        self.schema: Optional[ConceptSchema] = None
        self.schema_error: Optional[SchemaLoadError] = None
        self.encounter_error: Optional[EncounterLoadError] = None
        self.edit: EditDetection = CREATE_MODE
        self.is_loading = False
        self.is_loading_initial_values = False
        self._loaded = False
        self._closed = False
        self._tasks: Set[asyncio.Task] = set()

        if workspace is not None:
            self.form.register_close_guard(workspace)

    # ── Status ───────────────────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        """True once the schema and any initial values are loaded."""
        return (
            self._loaded
            and not self._closed
            and self.schema is not None
            and not self.is_loading
            and not self.is_loading_initial_values
        )

    @property
    def is_editing(self) -> bool:
        return self.edit.is_editing

    @property
    def obs_uuid(self) -> Optional[str]:
        return self.edit.obs_uuid

    @property
    def heading(self) -> Optional[str]:
        """Display name shown above grouped results; ``None`` for single results."""
        if self.schema is not None and self.schema.is_group:
            return self.schema.display
        return None

    @property
    def submission_state(self) -> SubmissionState:
        return self.orchestrator.state

    # ── Task tracking ────────────────────────────────────────────────────────

    def _spawn(self, awaitable: Awaitable[T]) -> "asyncio.Future[T]":
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Loading ──────────────────────────────────────────────────────────────

    async def load(self) -> None:
        """
        Load schema and encounter, detect edit mode and seed initial values.

        Raises:
            SchemaLoadError: the concept schema is unavailable (includes
                ConceptNotFound).  The session cannot be submitted.
        """
        if self._closed:
            raise FormNotReady("session is closed")
        if self._loaded:
            logger.debug("session: order %s already loaded, edit detection not repeated.", self.order.uuid)
            return

        self.is_loading = True
        try:
            schema_result, encounter_result = await asyncio.gather(
                self._spawn(get_concept_schema(self._client, self.order.concept.uuid)),
                self._spawn(get_encounter(self._client, self.order.encounter.uuid)),
                return_exceptions=True,
            )
        finally:
            self.is_loading = False

        encounter: Optional[Encounter] = None
        if isinstance(encounter_result, EncounterLoadError):
            self.encounter_error = encounter_result
            logger.warning("session: %s; assuming create mode.", encounter_result)
        elif isinstance(encounter_result, BaseException):
            raise encounter_result
        else:
            encounter = encounter_result

        if isinstance(schema_result, SchemaLoadError):
            self.schema_error = schema_result
            logger.error("session: %s", schema_result)
            raise schema_result
        if isinstance(schema_result, BaseException):
            raise schema_result
        self.schema = schema_result

        self.edit = detect_edit_mode(encounter, self.order)
        initial_values: Mapping[str, Any] = {}
        if self.edit.is_editing and self.edit.obs_uuid:
            self.is_loading_initial_values = True
            try:
                obs = await self._spawn(get_observation(self._client, self.edit.obs_uuid))
                initial_values = initial_values_from_observation(obs)
            except ObservationLoadError as exc:
                logger.warning("session: %s; editing without initial values.", exc)
            finally:
                self.is_loading_initial_values = False

        self.form.seed(initial_values)
        self._loaded = True
        logger.info(
            "session: order %s ready in %s mode (concept %s).",
            self.order.uuid,
            self.edit.mode.value,
            self.schema.uuid,
        )

    # ── Editing ──────────────────────────────────────────────────────────────

    def _require_ready(self) -> ConceptSchema:
        if not self.is_ready or self.schema is None:
            raise FormNotReady(
                "lab results form is not ready: "
                + ("closed" if self._closed else "schema or initial values still loading")
            )
        return self.schema

    def set_value(self, concept_uuid: str, value: Any) -> None:
        self._require_ready()
        self.form.set_value(concept_uuid, value)

    def update(self, values: Mapping[str, Any]) -> None:
        self._require_ready()
        self.form.update(values)

    def build_envelope(self) -> dict:
        """
        Validate the current values and build the ``{"obs": [...]}`` envelope.

        Raises:
            FormNotReady: loading has not finished.
            ValidationGap: a value is missing or cannot be saved.
        """
        schema = self._require_ready()
        values = self.form.values
        validate_values(schema, values)
        return build_obs_envelope(schema, self.order, values)

    # ── Actions ──────────────────────────────────────────────────────────────

    async def submit(self) -> Optional[SubmissionRecord]:
        """
        Save the current values.

        Returns:
            The ``SubmissionRecord``, or ``None`` if a submission is already
            in flight for this session.

        Raises:
            FormNotReady, ValidationGap: nothing was sent.
            asyncio.CancelledError: the session was closed mid-submit.
        """
        if self.orchestrator.is_submitting:
            logger.warning("session: submit ignored, order %s is already submitting.", self.order.uuid)
            return None
        envelope = self.build_envelope()
        return await self._spawn(self.orchestrator.submit(self.order, envelope))

    def discard(self) -> bool:
        """Close the workspace without saving.  Not allowed while submitting."""
        if self.orchestrator.is_submitting:
            return False
        if self.workspace is not None:
            self.workspace.close()
        return True

    async def close(self) -> None:
        """Tear the session down, cancelling in-flight loads and submissions."""
        self._closed = True
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("session: order %s closed, %d in-flight call(s) cancelled.", self.order.uuid, len(pending))
