#!/usr/bin/env python3
"""
enter_lab_results.py
--------------------
LabResults — Lab Order Result Entry — Command-line result entry
---------------------------------------------------------------
Enters results for one lab order against a live OpenMRS, running the same
session the API uses:

  Step 1  LOAD      fetch the order, its concept schema and encounter
  Step 2  MODE      report create vs edit mode and any existing values
  Step 3  VALIDATE  check the values given on the command line
  Step 4  SUBMIT    save obs, mark the order COMPLETED, discontinue it
                    (skipped with --dry-run, which prints the envelope)

Exits with code 1 when loading, validation or submission fails.

Usage:
    python scripts/enter_lab_results.py --order <uuid> \
        --value <concept-uuid>=98.6 --value <concept-uuid>=<answer-uuid> \
        [--base-url http://localhost:8080/openmrs] [--dry-run]

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Dict, List, Optional

# ── Path bootstrap ────────────────────────────────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_REPO_ROOT = os.path.dirname(_SCRIPT_DIR)
sys.path.insert(0, _REPO_ROOT)

from dotenv import load_dotenv
load_dotenv(os.path.join(_REPO_ROOT, ".env"), override=False)

from pydantic import ValidationError                                  # noqa: E402

from openmrs_client import OpenMRSAPIError, OpenMRSClient              # noqa: E402
from schemas import Order                                              # noqa: E402
from lab_results.exceptions import LabResultsError, ValidationGap     # noqa: E402
from lab_results.notifications import LoggingNotifier                 # noqa: E402
from lab_results.session import LabResultsSession                     # noqa: E402
from lab_results.submission import SubmissionStatus                   # noqa: E402

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("enter_lab_results")

_SEPARATOR = "─" * 72


def _parse_values(pairs: List[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for pair in pairs:
        concept_uuid, sep, value = pair.partition("=")
        if not sep or not concept_uuid:
            raise SystemExit(f"--value expects <concept-uuid>=<value>, got {pair!r}")
        values[concept_uuid.strip()] = value
    return values


async def run(order_uuid: str, values: Dict[str, str], base_url: Optional[str], dry_run: bool) -> int:
    async with OpenMRSClient(base_url=base_url) as client:
        # ── Step 1: load ──────────────────────────────────────────────────────
        try:
            order = Order.model_validate(await client.get_order(order_uuid))
        except (OpenMRSAPIError, ValidationError) as exc:
            log.error("Could not load order %s: %s", order_uuid, exc)
            return 1

        session = LabResultsSession(client, order, notifier=LoggingNotifier())
        try:
            await session.load()
        except LabResultsError as exc:
            log.error("%s", exc)
            return 1

        # ── Step 2: mode ──────────────────────────────────────────────────────
        log.info(_SEPARATOR)
        log.info("Order %s (%s), concept %s", order.order_number, order.uuid, session.schema.display)
        log.info("Mode: %s%s", session.edit.mode.value, f" (obs {session.obs_uuid})" if session.obs_uuid else "")
        for field in session.schema.value_fields:
            log.info(
                "  %-38s %-9s %-24s current=%s",
                field.uuid,
                field.datatype.value,
                field.display[:24],
                session.form.initial_values.get(field.uuid, "-"),
            )

        # ── Step 3: validate ──────────────────────────────────────────────────
        session.update(values)
        try:
            envelope = session.build_envelope()
        except ValidationGap as exc:
            for concept_uuid, reason in exc.field_errors.items():
                log.error("  %s: %s", concept_uuid, reason)
            return 1

        if dry_run:
            log.info("Dry run, envelope not sent:")
            print(json.dumps(envelope, indent=2))
            return 0

        # ── Step 4: submit ────────────────────────────────────────────────────
        record = await session.submit()
        for outcome in record.steps:
            log.info("  %-18s %s%s", outcome.step.value, outcome.status.value, f"  ({outcome.error})" if outcome.error else "")
        log.info(_SEPARATOR)
        return 0 if record.status is SubmissionStatus.SUCCEEDED else 1


# ── CLI ───────────────────────────────────────────────────────────────────────

def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enter results for an OpenMRS lab order.")
    parser.add_argument("--order", required=True, metavar="UUID", help="Order uuid")
    parser.add_argument(
        "--value",
        action="append",
        default=[],
        metavar="CONCEPT=VALUE",
        help="Result value keyed by concept uuid; repeat for each set member",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        metavar="URL",
        help="OpenMRS base URL (default: $OPENMRS_BASE_URL or http://localhost:8080/openmrs)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Validate and print the envelope only")
    return parser.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    sys.exit(asyncio.run(run(args.order, _parse_values(args.value), args.base_url, args.dry_run)))
