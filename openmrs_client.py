"""
openmrs_client.py
-----------------
LabResults — Lab Order Result Entry — OpenMRS REST Client
---------------------------------------------------------
Async client for the OpenMRS REST web services module (``/ws/rest/v1``).

Only the resources needed to enter results for a lab order are covered:

  - concept    : schema of the ordered test (datatype, set members, answers)
  - encounter  : the order's encounter and its previously recorded obs
  - obs        : a single existing observation (edit mode seed)
  - order      : the order itself, patient order listings, fulfiller
                 details, discontinuation

Encounters and order listings are read through a shared ``ResponseCache``
that a successful save invalidates for the patient.

Authentication is HTTP Basic with the credentials from the environment;
session handling beyond that is left to the server.

Usage (async context manager — preferred):
    async with OpenMRSClient() as client:
        concept = await client.get_concept(concept_uuid)
        await client.save_encounter_observations(encounter_uuid, {"obs": [...]})

Usage (manual lifecycle):
    client = OpenMRSClient()
    await client.connect()
    encounter = await client.get_encounter(encounter_uuid)
    await client.close()

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

import httpx

from lab_results.cache import ResponseCache

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Custom representations
# ---------------------------------------------------------------------------
# Numeric range fields are requested on both the concept and its members so
# value validation can run without a second round trip per member.

_CONCEPT_FIELDS = (
    "uuid,display,name:(display),datatype:(uuid,display),set,"
    "answers:(uuid,display),"
    "hiNormal,hiAbsolute,hiCritical,lowNormal,lowAbsolute,lowCritical,units"
)

CONCEPT_REPRESENTATION = (
    f"custom:({_CONCEPT_FIELDS},setMembers:({_CONCEPT_FIELDS}))"
)

DEFAULT_BASE_URL = "http://localhost:8080/openmrs"


class OpenMRSAPIError(Exception):
    """Raised when a REST call returns a non-2xx response or cannot be sent."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"OpenMRS REST API error {status_code}: {body}")

    @property
    def message(self) -> str:
        """
        Human-readable failure detail.

        OpenMRS wraps errors as ``{"error": {"message": "..."}}``; fall back
        to the raw body when the response is not in that shape.
        """
        try:
            parsed = json.loads(self.body)
            detail = parsed.get("error", {}).get("message")
            if detail:
                return str(detail)
        except (ValueError, AttributeError):
            pass
        return self.body or f"HTTP {self.status_code}"


class OpenMRSClient:
    """
    Async OpenMRS REST client.

    Args:
        base_url:  Base URL of the OpenMRS webapp (without ``/ws/rest/v1``).
                   Defaults to ``OPENMRS_BASE_URL`` env var, then
                   ``http://localhost:8080/openmrs``.
        username:  REST username (``OPENMRS_USERNAME``).
        password:  REST password (``OPENMRS_PASSWORD``).
        timeout:   HTTP request timeout in seconds (``OPENMRS_TIMEOUT``).
        transport: Optional ``httpx`` transport, used by tests to inject an
                   ``httpx.MockTransport``.
        cache:     Response cache for encounter and order-list reads.  Pass
                   the process-wide cache to share it across clients.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache: Optional[ResponseCache] = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENMRS_BASE_URL", DEFAULT_BASE_URL)
        ).rstrip("/")
        self.username = username or os.getenv("OPENMRS_USERNAME", "admin")
        self.password = password or os.getenv("OPENMRS_PASSWORD", "Admin123")
        self.timeout = (
            timeout if timeout is not None
            else float(os.getenv("OPENMRS_TIMEOUT", "30"))
        )
        self._transport = transport
        self.cache = cache if cache is not None else ResponseCache()

        # Underlying HTTP transport (initialised in connect / __aenter__)
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                auth=(self.username, self.password),
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
            logger.debug("OpenMRSClient: HTTP transport initialised (%s).", self.base_url)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("OpenMRSClient: HTTP transport closed.")

    async def __aenter__(self) -> "OpenMRSClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # ── URL helpers ──────────────────────────────────────────────────────────

    @property
    def rest_base(self) -> str:
        """Base URL of the REST web services module."""
        return f"{self.base_url}/ws/rest/v1"

    def order_list_key(self, patient_uuid: str) -> str:
        """
        Cache-key prefix shared by every order listing of one patient.

        Order lists are fetched as ``/order?patient=<uuid>&...``; any cached
        entry whose key is this base or extends it with ``&`` belongs to the
        patient.
        """
        return f"{self.rest_base}/order?patient={patient_uuid}"

    def encounter_key(self, encounter_uuid: str) -> str:
        """Cache key of the full encounter representation."""
        return f"{self.rest_base}/encounter/{encounter_uuid}?v=full"

    # ── Internal request helper ──────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Execute an authenticated REST request and return the parsed JSON body.

        Args:
            method: HTTP method (``"GET"``, ``"POST"``, …).
            path:   Path relative to the REST base (e.g. ``"/concept/abc"``).
            params: URL query parameters.
            json:   Request body (serialised as JSON).

        Returns:
            Parsed JSON response body (``{}`` for empty responses).

        Raises:
            RuntimeError:     if ``connect()`` / ``__aenter__`` was not called.
            OpenMRSAPIError:  if the server returns a non-2xx status code or
                              the request could not be sent.
        """
        if self._http is None:
            raise RuntimeError(
                "OpenMRSClient is not connected. "
                "Use 'async with OpenMRSClient() as client:' or call connect() first."
            )

        url = f"{self.rest_base}{path}"
        logger.debug("OpenMRSClient: %s %s params=%s", method, path, params or "<none>")

        try:
            resp = await self._http.request(method, url, params=params, json=json)
        except httpx.HTTPError as exc:
            raise OpenMRSAPIError(0, str(exc)) from exc

        if resp.status_code not in range(200, 300):
            raise OpenMRSAPIError(resp.status_code, resp.text)

        return resp.json() if resp.content else {}

    # ── Reads ────────────────────────────────────────────────────────────────

    async def get_concept(self, concept_uuid: str) -> dict[str, Any]:
        """
        Fetch a concept with datatype, answers, ranges and set members
        →  ``GET /concept/{uuid}?v=custom:(...)``.
        """
        return await self._request(
            "GET", f"/concept/{concept_uuid}", params={"v": CONCEPT_REPRESENTATION}
        )

    async def _cached_get(self, key: str, path: str, params: dict[str, str]) -> dict[str, Any]:
        """GET through ``self.cache``; only successful responses are stored."""
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("OpenMRSClient: cache hit %s", key)
            return cached
        body = await self._request("GET", path, params=params)
        self.cache.set(key, body)
        return body

    async def get_encounter(self, encounter_uuid: str) -> dict[str, Any]:
        """
        Fetch an encounter with its observations  →  ``GET /encounter/{uuid}?v=full``.

        Read through the response cache under ``encounter_key``.
        """
        return await self._cached_get(
            self.encounter_key(encounter_uuid),
            f"/encounter/{encounter_uuid}",
            {"v": "full"},
        )

    async def get_observation(self, obs_uuid: str) -> dict[str, Any]:
        """Fetch a single observation  →  ``GET /obs/{uuid}?v=full``."""
        return await self._request("GET", f"/obs/{obs_uuid}", params={"v": "full"})

    async def get_order(self, order_uuid: str) -> dict[str, Any]:
        """Fetch an order  →  ``GET /order/{uuid}?v=full``."""
        return await self._request("GET", f"/order/{order_uuid}", params={"v": "full"})

    async def get_patient_orders(self, patient_uuid: str, status: str = "ACTIVE") -> list[dict[str, Any]]:
        """
        List a patient's orders  →  ``GET /order?patient={uuid}&status=...&v=full``.

        Read through the response cache under a key extending
        ``order_list_key``, so saving results for the patient drops it.
        """
        key = f"{self.order_list_key(patient_uuid)}&status={status}&v=full"
        body = await self._cached_get(
            key,
            "/order",
            {"patient": patient_uuid, "status": status, "v": "full"},
        )
        return body.get("results", [])

    # ── Writes ───────────────────────────────────────────────────────────────

    async def save_encounter_observations(
        self, encounter_uuid: str, envelope: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Attach observations to an existing encounter
        →  ``POST /encounter/{uuid}`` with body ``{"obs": [...]}``.

        Raises:
            ValueError:       if *envelope* has no ``"obs"`` list.
            OpenMRSAPIError:  if the server rejects the observations.
        """
        if not isinstance(envelope.get("obs"), list):
            raise ValueError("Observation envelope must carry an 'obs' list.")

        logger.debug(
            "OpenMRSClient: saving %d obs on encounter %s",
            len(envelope["obs"]),
            encounter_uuid,
        )
        return await self._request("POST", f"/encounter/{encounter_uuid}", json=envelope)

    async def update_fulfiller_details(
        self, order_uuid: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Update the fulfiller status of an order  →  ``POST /order/{uuid}/fulfillerdetails``."""
        logger.debug(
            "OpenMRSClient: order %s fulfillerStatus=%s",
            order_uuid,
            payload.get("fulfillerStatus", "?"),
        )
        return await self._request(
            "POST", f"/order/{order_uuid}/fulfillerdetails", json=payload
        )

    async def post_order(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Create an order  →  ``POST /order``.

        Used with ``action="DISCONTINUE"`` and ``previousOrder`` set to stop
        an existing order.
        """
        logger.debug(
            "OpenMRSClient: POST /order (action=%s, previousOrder=%s)",
            payload.get("action", "NEW"),
            payload.get("previousOrder", "-"),
        )
        return await self._request("POST", "/order", json=payload)
