"""
Exports Module - Koperasi back office

Financial report aggregation and multi-format export engine.

Pipeline per report:
    provider -> aggregation -> (spreadsheet | document) -> naming -> storage

Around it:
- batch.py     -> batch orchestration with per-item failure isolation
- bundler.py   -> zip archives of already exported artifacts
- queue.py     -> deferred batches on the Celery ``exports`` queue
- retention.py -> age-based cleanup of stored artifacts
- audit.py     -> audit events for every export and cleanup
"""
