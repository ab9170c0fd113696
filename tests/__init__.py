"""
tests/
------
LabResults — Lab Order Result Entry — Test Package
--------------------------------------------------
Test Modules:
    - test_schemas.py:           REST parsing, datatype enum, payload shape
    - test_payload_builder.py:   leaf / group payloads, value validation
    - test_concept_reader.py:    concept schema reads and error mapping
    - test_encounter_lookup.py:  edit detection and initial values
    - test_form_state.py:        one-shot seeding, dirtiness, close guard
    - test_submission.py:        save sequence, failures, re-entrancy, cancel
    - test_session.py:           load ordering and end-to-end session flow
    - test_openmrs_client.py:    REST client against httpx.MockTransport
    - test_main.py:              FastAPI endpoints

Run:
    pytest tests -v --tb=short

Project: LabResults — Lab Order Result Entry
"""
