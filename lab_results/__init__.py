"""
lab_results
-----------
LabResults — Lab Order Result Entry — Core Package
--------------------------------------------------
Schema-driven result entry for lab orders.

Modules:
    concept_reader:   Resolve a concept uuid to its ConceptSchema.
    encounter_lookup: Load the order's encounter and detect edit mode.
    payload_builder:  Pure {schema, order, values} -> observation payload.
    submission:       Write obs -> mark fulfilled -> discontinue, as a saga.
    form_state:       Dirty tracking, one-shot seeding, close guard.
    session:          One result-entry session per order, wiring the above.
    cache:            Patient-scoped order-list cache invalidation.
    notifications:    User-visible success / error notifications.

Project: LabResults — Lab Order Result Entry
"""
