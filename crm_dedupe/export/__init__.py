"""
crm_dedupe.export - Export module

JSON exports of finished process runs.
"""

from crm_dedupe.export.manager import ExportError, ExportManager

__all__ = ["ExportError", "ExportManager"]
