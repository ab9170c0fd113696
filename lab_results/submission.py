"""
submission.py
-------------
LabResults — Lab Order Result Entry — Submission Orchestrator
-------------------------------------------------------------
Saves entered results for an order.  Three remote calls run strictly in
sequence, each only after the previous one was accepted:

    1. SAVE_OBSERVATIONS   POST /encounter/{encounter}         {"obs": [...]}
    2. MARK_FULFILLED      POST /order/{order}/fulfillerdetails
                           {"fulfillerStatus": "COMPLETED",
                            "fulfillerComment": "Test Results Entered"}
    3. DISCONTINUE_ORDER   POST /order  (action DISCONTINUE, previousOrder=order)

The calls share no transaction.  Each run is recorded as a saga: every step
gets a ``StepOutcome`` (pending / succeeded / failed / skipped) on the
returned ``SubmissionRecord``.  A failed step stops the sequence; later
steps are marked skipped and nothing already accepted is rolled back.
Resubmitting reruns all three steps, so a failure after step 1 or 2 can
leave duplicate observations or status updates on the server.

State machine (``SubmissionState``)::

    IDLE ──submit──▶ SUBMITTING ──all steps ok──▶ SUCCEEDED
                        │
                        └──step failed / cancelled──▶ FAILED(reason) ──submit──▶ SUBMITTING

A call to ``submit`` while SUBMITTING is ignored and returns ``None``.

On success the patient's cached order listings and the order's encounter
are invalidated, the workspace is closed with saved changes, and a success
notification naming the order number is shown.  On failure the workspace
stays open and an error notification carries the failure message.  If the
observations were already saved the cached encounter is dropped as well, so
reopening the form finds them and starts in edit mode.

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from openmrs_client import OpenMRSAPIError, OpenMRSClient
from schemas import Order
from lab_results.cache import ResponseCache
from lab_results.exceptions import SubmissionStepFailure
from lab_results.notifications import Notifier, results_failed, results_saved

logger = logging.getLogger(__name__)

FULFILLER_STATUS_COMPLETED = "COMPLETED"
FULFILLER_COMMENT = "Test Results Entered"
CANCELLED_REASON = "Submission cancelled"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class SubmissionStatus(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class SubmissionState:
    """Current submission status; ``reason`` is set only when FAILED."""

    status: SubmissionStatus = SubmissionStatus.IDLE
    reason: Optional[str] = None

    @property
    def is_submitting(self) -> bool:
        return self.status is SubmissionStatus.SUBMITTING

    @property
    def succeeded(self) -> bool:
        return self.status is SubmissionStatus.SUCCEEDED


IDLE = SubmissionState()


class SubmissionStep(str, Enum):
    SAVE_OBSERVATIONS = "save_observations"
    MARK_FULFILLED = "mark_fulfilled"
    DISCONTINUE_ORDER = "discontinue_order"


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepOutcome(BaseModel):
    step: SubmissionStep
    status: StepStatus = StepStatus.PENDING
    error: Optional[str] = None


class SubmissionRecord(BaseModel):
    """Per-step outcome of one submission attempt."""

    order_uuid: str
    status: SubmissionStatus = SubmissionStatus.SUBMITTING
    reason: Optional[str] = None
    steps: List[StepOutcome] = Field(
        default_factory=lambda: [StepOutcome(step=step) for step in SubmissionStep]
    )

    def outcome(self, step: SubmissionStep) -> StepOutcome:
        for outcome in self.steps:
            if outcome.step is step:
                return outcome
        raise KeyError(step)

    @property
    def completed_steps(self) -> List[SubmissionStep]:
        return [o.step for o in self.steps if o.status is StepStatus.SUCCEEDED]


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class Workspace(Protocol):
    """Hosting workspace that shows the result form."""

    def prompt_before_closing(self, guard: Callable[[], bool]) -> None: ...

    def close_with_saved_changes(self) -> None: ...

    def close(self) -> None: ...


StateListener = Callable[[SubmissionState], None]


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def fulfiller_details_payload() -> Dict[str, str]:
    return {
        "fulfillerStatus": FULFILLER_STATUS_COMPLETED,
        "fulfillerComment": FULFILLER_COMMENT,
    }


def discontinuation_payload(order: Order) -> Dict[str, Any]:
    """New order that discontinues *order*, carrying over its context."""
    return {
        "previousOrder": order.uuid,
        "type": "testorder",
        "action": "DISCONTINUE",
        "careSetting": order.care_setting.uuid,
        "encounter": order.encounter.uuid,
        "patient": order.patient.uuid,
        "concept": order.concept.uuid,
        "orderer": order.orderer.uuid,
    }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class SubmissionOrchestrator:
    """
    Runs the save sequence for one result-entry session and owns its
    ``SubmissionState``.

    Args:
        client:    Connected ``OpenMRSClient``.
        cache:     Shared response cache to invalidate after success.
        notifier:  Receives success / error notifications.
        workspace: Hosting workspace; closed with saved changes on success.
    """

    def __init__(
        self,
        client: OpenMRSClient,
        cache: ResponseCache,
        notifier: Notifier,
        workspace: Optional[Workspace] = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._notifier = notifier
        self._workspace = workspace
        self._state = IDLE
        self._listeners: List[StateListener] = []
        self.last_record: Optional[SubmissionRecord] = None

    @property
    def state(self) -> SubmissionState:
        return self._state

    @property
    def is_submitting(self) -> bool:
        return self._state.is_submitting

    def add_listener(self, listener: StateListener) -> None:
        """Call *listener* with the new state on every transition."""
        self._listeners.append(listener)

    def _transition(self, state: SubmissionState) -> None:
        logger.debug("submission: %s -> %s", self._state.status.value, state.status.value)
        self._state = state
        for listener in self._listeners:
            listener(state)

    async def submit(self, order: Order, envelope: Dict[str, Any]) -> Optional[SubmissionRecord]:
        """
        Save *envelope* for *order* and complete the order.

        Args:
            order:    Order being resulted.
            envelope: ``{"obs": [...]}`` from ``payload_builder.build_obs_envelope``.

        Returns:
            The ``SubmissionRecord`` of this attempt, or ``None`` when a
            submission was already in flight.

        Raises:
            asyncio.CancelledError: when the session is torn down mid-submit.
                The state is FAILED before the error propagates.
        """
        if self._state.is_submitting:
            logger.warning("submission: order %s already submitting, ignoring re-entrant submit.", order.uuid)
            return None

        self._transition(SubmissionState(SubmissionStatus.SUBMITTING))
        record = SubmissionRecord(order_uuid=order.uuid)
        self.last_record = record

        try:
            await self._run_steps(order, envelope, record)
        except SubmissionStepFailure as exc:
            record.status = SubmissionStatus.FAILED
            record.reason = exc.message
            logger.error("submission: order %s failed at %s: %s", order.uuid, exc.step, exc.message)
            self._transition(SubmissionState(SubmissionStatus.FAILED, exc.message))
            if SubmissionStep.SAVE_OBSERVATIONS in record.completed_steps:
                self._invalidate_encounter(order)
            self._notifier.show(results_failed(exc.message))
            return record
        except asyncio.CancelledError:
            record.status = SubmissionStatus.FAILED
            record.reason = CANCELLED_REASON
            logger.warning(
                "submission: order %s cancelled after %s.",
                order.uuid,
                [step.value for step in record.completed_steps] or "no steps",
            )
            self._transition(SubmissionState(SubmissionStatus.FAILED, CANCELLED_REASON))
            raise

        record.status = SubmissionStatus.SUCCEEDED
        self._transition(SubmissionState(SubmissionStatus.SUCCEEDED))
        self._invalidate(order)
        if self._workspace is not None:
            self._workspace.close_with_saved_changes()
        self._notifier.show(results_saved(order.order_number))
        logger.info("submission: results saved for order %s (%s).", order.uuid, order.order_number)
        return record

    async def _run_steps(self, order: Order, envelope: Dict[str, Any], record: SubmissionRecord) -> None:
        calls: List[tuple[SubmissionStep, Callable[[], Awaitable[Any]]]] = [
            (
                SubmissionStep.SAVE_OBSERVATIONS,
                lambda: self._client.save_encounter_observations(order.encounter.uuid, envelope),
            ),
            (
                SubmissionStep.MARK_FULFILLED,
                lambda: self._client.update_fulfiller_details(order.uuid, fulfiller_details_payload()),
            ),
            (
                SubmissionStep.DISCONTINUE_ORDER,
                lambda: self._client.post_order(discontinuation_payload(order)),
            ),
        ]

        for index, (step, call) in enumerate(calls):
            outcome = record.outcome(step)
            try:
                await call()
            except asyncio.CancelledError:
                outcome.status = StepStatus.FAILED
                outcome.error = CANCELLED_REASON
                self._skip_remaining(record, calls[index + 1:])
                raise
            except OpenMRSAPIError as exc:
                self._fail(record, outcome, calls[index + 1:], exc.message)
                raise SubmissionStepFailure(step.value, exc.message, exc) from exc
            except Exception as exc:
                logger.exception("submission: unexpected error in step %s", step.value)
                message = str(exc) or type(exc).__name__
                self._fail(record, outcome, calls[index + 1:], message)
                raise SubmissionStepFailure(step.value, message, exc) from exc
            outcome.status = StepStatus.SUCCEEDED
            logger.debug("submission: order %s step %s ok", order.uuid, step.value)

    def _fail(self, record: SubmissionRecord, outcome: StepOutcome, remaining: list, message: str) -> None:
        outcome.status = StepStatus.FAILED
        outcome.error = message
        self._skip_remaining(record, remaining)

    @staticmethod
    def _skip_remaining(record: SubmissionRecord, remaining: list) -> None:
        for step, _ in remaining:
            record.outcome(step).status = StepStatus.SKIPPED

    def _invalidate_encounter(self, order: Order) -> List[str]:
        encounter_key = self._client.encounter_key(order.encounter.uuid)
        return self._cache.invalidate(lambda key: key == encounter_key)

    def _invalidate(self, order: Order) -> None:
        dropped = self._cache.invalidate_query(self._client.order_list_key(order.patient.uuid))
        dropped += self._invalidate_encounter(order)
        logger.debug("submission: invalidated %d cached response(s) for patient %s", len(dropped), order.patient.uuid)
