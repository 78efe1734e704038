"""
Export manager for finished process runs.

Provides functionality to:
- Write a JSON summary of a finished run with timestamp naming
- List available exports sorted by timestamp
- Load an export back for inspection
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from crm_dedupe.merge.models import DuplicateGroup, ProcessRun

logger = logging.getLogger(__name__)


class ExportError(Exception):
    """Raised when an export file cannot be written."""

    pass


class ExportManager:
    """
    Manager for the export artifacts produced when a run finishes.

    Attributes:
        export_dir: Directory path where exports are stored

    Usage:
        em = ExportManager(Path("~/.crm-dedupe/exports"))

        reference = em.write_export(run, groups)
        data = em.load_export(Path(reference))
    """

    EXPORT_VERSION = "1.0"
    EXPORT_PREFIX = "export_"
    EXPORT_SUFFIX = ".json"

    def __init__(self, export_dir: Path):
        """
        Initialize the export manager.

        Args:
            export_dir: Directory path where exports will be written
        """
        self.export_dir = Path(export_dir).expanduser()

    def write_export(self, run: ProcessRun, groups: Sequence[DuplicateGroup]) -> str:
        """
        Write the outcome of a run to a timestamped JSON file.

        Creates a file named export_<run_key>_YYYYMMDD_HHMMSS.json.

        Args:
            run: The run being finished
            groups: Every group of the run

        Returns:
            Path of the written file, used as the run's export reference

        Raises:
            ExportError: If the file cannot be written

        Export format:
            {
                "version": "1.0",
                "timestamp": "2024-01-20T10:30:00.000000",
                "run": {"run_key": "...", "account_id": "...", ...},
                "groups": [
                    {
                        "id": 1,
                        "retained_record_id": "101",
                        "original_members": [...],
                        "surviving_members": [...]
                    }
                ]
            }
        """
        timestamp = datetime.now()
        ts_str = timestamp.strftime("%Y%m%d_%H%M%S")
        filename = f"{self.EXPORT_PREFIX}{run.run_key}_{ts_str}{self.EXPORT_SUFFIX}"
        export_path = self.export_dir / filename

        export_data = {
            "version": self.EXPORT_VERSION,
            "timestamp": timestamp.isoformat(),
            "run": {
                "run_key": run.run_key,
                "account_id": run.account_id,
                "display_name": run.display_name,
                "total_groups": run.total_groups,
                "merged_groups": run.processed_groups,
            },
            "groups": [self._serialize_group(group) for group in groups],
        }

        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
            with open(export_path, "w", encoding="utf-8") as f:
                json.dump(export_data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to write export {export_path}: {e}")
            raise ExportError(f"Could not write export file {export_path}: {e}") from e

        logger.info(f"Wrote export for run {run.run_key}: {export_path}")
        return str(export_path)

    def list_exports(self) -> list[Path]:
        """List export files, newest first."""
        if not self.export_dir.exists():
            return []
        exports = list(
            self.export_dir.glob(f"{self.EXPORT_PREFIX}*{self.EXPORT_SUFFIX}")
        )
        exports.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return exports

    def load_export(self, export_file: Path) -> dict[str, Any] | None:
        """
        Load and parse an export file.

        Returns:
            The export data, or None if the file cannot be read or parsed
        """
        try:
            with open(export_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return None

        if not isinstance(data, dict) or "run" not in data:
            return None
        return data

    def _serialize_group(self, group: DuplicateGroup) -> dict[str, Any]:
        return {
            "id": group.id,
            "state": group.state.value,
            "retained_record_id": group.retained_record_id,
            "original_members": [m.to_dict() for m in group.original_members],
            "surviving_members": [m.to_dict() for m in group.members],
        }
