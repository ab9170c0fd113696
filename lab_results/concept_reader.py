"""
concept_reader.py
-----------------
LabResults — Lab Order Result Entry — Concept Schema Reader
-----------------------------------------------------------
Resolves a concept uuid to its ``ConceptSchema``: datatype, set flag,
ordered set members (each with its own datatype), coded answers and
numeric ranges.  Read-only; no side effects.

Raises ``ConceptNotFound`` on a 404 and ``SchemaLoadError`` for any other
transport or parse failure.

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from openmrs_client import OpenMRSAPIError, OpenMRSClient
from schemas import ConceptSchema
from lab_results.exceptions import ConceptNotFound, SchemaLoadError

logger = logging.getLogger(__name__)


async def get_concept_schema(client: OpenMRSClient, concept_uuid: str) -> ConceptSchema:
    """
    Fetch and parse the schema of *concept_uuid*.

    Args:
        client:       Connected ``OpenMRSClient``.
        concept_uuid: Concept of the ordered test.

    Returns:
        The parsed ``ConceptSchema``.

    Raises:
        ConceptNotFound: the server returned 404.
        SchemaLoadError: any other failure, including a malformed response.
    """
    try:
        raw = await client.get_concept(concept_uuid)
    except OpenMRSAPIError as exc:
        if exc.status_code == 404:
            raise ConceptNotFound(concept_uuid) from exc
        raise SchemaLoadError(concept_uuid, exc.message) from exc

    try:
        schema = ConceptSchema.model_validate(raw)
    except ValidationError as exc:
        raise SchemaLoadError(concept_uuid, f"malformed concept: {exc.errors()[0]['msg']}") from exc

    logger.debug(
        "concept_reader: %s datatype=%s set=%s members=%d",
        schema.uuid,
        schema.datatype.value,
        schema.is_set,
        len(schema.set_members),
    )
    return schema
