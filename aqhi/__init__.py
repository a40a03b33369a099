"""
AQHI Engine — Reconciliation and Risk Index Package.

Components:
    - ingestion: provider connectors, payload normalizer, field validator
    - reconciliation: source-priority fallback merge per location/hour
    - streaming: rolling window averages per location
    - index: relative-risk AQHI calculator and category bands
    - classification: data quality grading
    - community: area-level summaries
"""
