"""
Workflow import/export envelopes.
"""

from exprsn_core.transfer.service import (
    EXPORT_VERSION,
    BulkImportResult,
    ConflictResolution,
    ImportExportService,
    ImportOptions,
    ImportResult,
    serialize_workflow,
    to_json,
    validate_envelope,
)

__all__ = [
    "EXPORT_VERSION",
    "BulkImportResult",
    "ConflictResolution",
    "ImportExportService",
    "ImportOptions",
    "ImportResult",
    "serialize_workflow",
    "to_json",
    "validate_envelope",
]
