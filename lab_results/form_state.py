"""
form_state.py
-------------
LabResults — Lab Order Result Entry — Form State Adapter
--------------------------------------------------------
Thin observer between the rendering layer and the core.  Owns no business
data beyond the values being edited:

  - initial values, seeded exactly once (SeedState UNSEEDED -> SEEDED)
  - current values and whether they diverge from the initial ones
  - the close guard registered with the hosting workspace
  - ``is_submitting``, mirrored from the SubmissionOrchestrator

Seeding is one-shot.  It is refused once it has happened, and once the user
has started editing, so a late snapshot can never overwrite user input.

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from lab_results.submission import IDLE, SubmissionState, Workspace

logger = logging.getLogger(__name__)


class SeedState(str, Enum):
    UNSEEDED = "unseeded"
    SEEDED = "seeded"


def _normalise(values: Mapping[str, Any]) -> Dict[str, Any]:
    # Blank inputs are the same as untouched ones.
    return {
        key: value
        for key, value in values.items()
        if value is not None and not (isinstance(value, str) and not value.strip())
    }


class FormState:
    """Values, dirtiness and submission flags for one result form."""

    def __init__(self) -> None:
        self.seed_state = SeedState.UNSEEDED
        self._initial: Dict[str, Any] = {}
        self._values: Dict[str, Any] = {}
        self._touched = False
        self._submission: SubmissionState = IDLE

    # ── Seeding ──────────────────────────────────────────────────────────────

    def seed(self, initial_values: Optional[Mapping[str, Any]]) -> bool:
        """
        Apply *initial_values* if the form has not been seeded or edited yet.

        Returns:
            True when the values were applied, False when seeding was refused.
        """
        if self.seed_state is SeedState.SEEDED or self._touched:
            logger.debug("form_state: seed refused (state=%s, touched=%s)", self.seed_state.value, self._touched)
            return False

        self._initial = dict(initial_values or {})
        self._values = dict(self._initial)
        self.seed_state = SeedState.SEEDED
        return True

    # ── Values ───────────────────────────────────────────────────────────────

    @property
    def initial_values(self) -> Dict[str, Any]:
        return dict(self._initial)

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    def set_value(self, concept_uuid: str, value: Any) -> None:
        """Record user input.  The first edit also closes the seeding window."""
        self._touched = True
        self.seed_state = SeedState.SEEDED
        self._values[concept_uuid] = value

    def update(self, values: Mapping[str, Any]) -> None:
        for concept_uuid, value in values.items():
            self.set_value(concept_uuid, value)

    @property
    def is_dirty(self) -> bool:
        return _normalise(self._values) != _normalise(self._initial)

    # ── Submission mirror ────────────────────────────────────────────────────

    def on_submission_state(self, state: SubmissionState) -> None:
        """Listener for ``SubmissionOrchestrator.add_listener``."""
        self._submission = state

    @property
    def is_submitting(self) -> bool:
        return self._submission.is_submitting

    @property
    def has_unsaved_changes(self) -> bool:
        return self.is_dirty and not self._submission.succeeded

    def register_close_guard(self, workspace: Workspace) -> None:
        """Ask *workspace* to prompt before closing while there are unsaved changes."""
        workspace.prompt_before_closing(lambda: self.has_unsaved_changes)
