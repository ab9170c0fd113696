"""
main.py
-------
LabResults — Lab Order Result Entry — FastAPI server
----------------------------------------------------
Exposes result entry for lab orders as a REST API in front of OpenMRS.
Every request opens its own ``LabResultsSession``; the response cache is
shared by the process so a save for one patient invalidates only that
patient's order listings.

Endpoints:
    GET  /health                           Service health check
    GET  /orders/{order_uuid}/result-form  Concept schema, mode and initial values
    POST /orders/{order_uuid}/results      Validate, save and complete the order
    GET  /patients/{patient_uuid}/orders   Active orders of a patient (cached)

Configuration (environment, optionally from .env):
    OPENMRS_BASE_URL   OpenMRS webapp URL (default http://localhost:8080/openmrs)
    OPENMRS_USERNAME   REST username (default admin)
    OPENMRS_PASSWORD   REST password
    OPENMRS_TIMEOUT    Request timeout in seconds (default 30)
    OPENMRS_CACHE_TTL  Seconds a cached encounter or order list is kept (default 600)
    LOG_LEVEL          Logging level (default INFO)

Project: LabResults — Lab Order Result Entry
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from dotenv import load_dotenv

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field, ValidationError

from openmrs_client import OpenMRSAPIError, OpenMRSClient
from schemas import ConceptSchema, Order
from lab_results.cache import ResponseCache
from lab_results.exceptions import ConceptNotFound, FormNotReady, SchemaLoadError, ValidationGap
from lab_results.notifications import CollectingNotifier, Notification
from lab_results.session import LabResultsSession
from lab_results.submission import StepOutcome

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "LabResults Lab Order Result Entry"

# Shared by every request in this process.
response_cache = ResponseCache(ttl=float(os.getenv("OPENMRS_CACHE_TTL", "600")))

# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(
    title=SERVICE_NAME,
    version=VERSION,
    description="Schema-driven lab result entry for OpenMRS test orders.",
)


# ── Request / Response models ──────────────────────────────────────────────────

class ResultFormResponse(BaseModel):
    """Response body for GET /orders/{order_uuid}/result-form."""
    order_uuid: str
    order_number: str
    mode: str
    obs_uuid: Optional[str] = None
    heading: Optional[str] = None
    concept: ConceptSchema
    initial_values: Dict[str, Any]
    encounter_error: Optional[str] = None


class ResultsRequest(BaseModel):
    """Request body for POST /orders/{order_uuid}/results."""
    values: Dict[str, Any] = Field(default_factory=dict)


class ResultsResponse(BaseModel):
    """Response body for POST /orders/{order_uuid}/results."""
    order_uuid: str
    mode: str
    state: str
    reason: Optional[str] = None
    steps: List[StepOutcome]
    notifications: List[Notification]
    workspace_closed: bool


class PatientOrdersResponse(BaseModel):
    """Response body for GET /patients/{patient_uuid}/orders."""
    patient_uuid: str
    orders: List[Order]


class RequestWorkspace:
    """Workspace stand-in for one HTTP request; records how it was closed."""

    def __init__(self) -> None:
        self.closed = False
        self.saved = False
        self.guard = None

    def prompt_before_closing(self, guard) -> None:
        self.guard = guard

    def close_with_saved_changes(self) -> None:
        self.closed = True
        self.saved = True

    def close(self) -> None:
        self.closed = True


# ── Dependencies / helpers ─────────────────────────────────────────────────────

async def get_client() -> AsyncIterator[OpenMRSClient]:
    """Yield a connected OpenMRS client for the duration of one request."""
    async with OpenMRSClient(cache=response_cache) as client:
        yield client


async def _load_order(client: OpenMRSClient, order_uuid: str) -> Order:
    """
    Fetch and parse the order.

    Raises:
        HTTPException 404: unknown order.
        HTTPException 502: OpenMRS failed or returned an unusable order.
    """
    try:
        raw = await client.get_order(order_uuid)
    except OpenMRSAPIError as exc:
        if exc.status_code == 404:
            raise HTTPException(status_code=404, detail=f"Order not found: {order_uuid}") from exc
        raise HTTPException(status_code=502, detail=exc.message) from exc
    try:
        return Order.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=502, detail=f"Malformed order {order_uuid}: {exc.errors()[0]['msg']}") from exc


async def _open_session(
    client: OpenMRSClient,
    order_uuid: str,
    notifier: Optional[CollectingNotifier] = None,
    workspace: Optional[RequestWorkspace] = None,
) -> LabResultsSession:
    order = await _load_order(client, order_uuid)
    session = LabResultsSession(client, order, notifier=notifier, workspace=workspace)
    try:
        await session.load()
    except ConceptNotFound as exc:
        await session.close()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SchemaLoadError as exc:
        await session.close()
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return session


# ── Endpoints ──────────────────────────────────────────────────────────────────

@app.get("/health")
def health_check() -> dict:
    """
    Return service health status.

    Returns:
        dict: service, version, status, timestamp.
    """
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/orders/{order_uuid}/result-form", response_model=ResultFormResponse)
async def get_result_form(order_uuid: str, client: OpenMRSClient = Depends(get_client)) -> ResultFormResponse:
    """
    Describe the result form for an order: the concept schema to render,
    whether results already exist (edit mode) and the values to start from.
    """
    session = await _open_session(client, order_uuid)
    try:
        return ResultFormResponse(
            order_uuid=session.order.uuid,
            order_number=session.order.order_number,
            mode=session.edit.mode.value,
            obs_uuid=session.obs_uuid,
            heading=session.heading,
            concept=session.schema,
            initial_values=session.form.initial_values,
            encounter_error=str(session.encounter_error) if session.encounter_error else None,
        )
    finally:
        await session.close()


@app.post("/orders/{order_uuid}/results", response_model=ResultsResponse)
async def submit_results(
    order_uuid: str,
    request: ResultsRequest,
    client: OpenMRSClient = Depends(get_client),
) -> ResultsResponse:
    """
    Save results for an order, mark it fulfilled and discontinue it.

    A failed save is a normal outcome: the response carries ``state="failed"``
    and the error notification.  Invalid values are rejected with 422 before
    anything is sent to OpenMRS.
    """
    notifier = CollectingNotifier()
    workspace = RequestWorkspace()
    session = await _open_session(client, order_uuid, notifier, workspace)

    try:
        session.update(request.values)
        record = await session.submit()
    except ValidationGap as exc:
        raise HTTPException(
            status_code=422,
            detail={"message": "Invalid lab result values", "field_errors": exc.field_errors},
        ) from exc
    except FormNotReady as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    finally:
        await session.close()

    state = session.submission_state
    return ResultsResponse(
        order_uuid=order_uuid,
        mode=session.edit.mode.value,
        state=state.status.value,
        reason=state.reason,
        steps=record.steps if record is not None else [],
        notifications=notifier.notifications,
        workspace_closed=workspace.closed,
    )


@app.get("/patients/{patient_uuid}/orders", response_model=PatientOrdersResponse)
async def get_patient_orders(patient_uuid: str, client: OpenMRSClient = Depends(get_client)) -> PatientOrdersResponse:
    """
    List a patient's active orders.  Served from the shared cache until
    results are saved for one of the patient's orders.
    """
    try:
        raw_orders = await client.get_patient_orders(patient_uuid)
    except OpenMRSAPIError as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc
    try:
        orders = [Order.model_validate(raw) for raw in raw_orders]
    except ValidationError as exc:
        raise HTTPException(status_code=502, detail=f"Malformed order list: {exc.errors()[0]['msg']}") from exc
    return PatientOrdersResponse(patient_uuid=patient_uuid, orders=orders)
