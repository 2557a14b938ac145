"""
Reports Module - Koperasi back office

Read side of the financial reports produced by the accounting workflow.
The export engine only ever sees immutable snapshots of these reports.

Architecture Pattern: Provider
- models.py   -> SQLAlchemy tables (cooperatives, reports, line items)
- schemas.py  -> Pydantic snapshots (Report, LineItem) and report type enums
- provider.py -> Loads snapshots by id or by filter
"""
