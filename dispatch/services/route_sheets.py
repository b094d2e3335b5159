"""
Route Sheet Export with Concurrency Control

Appends the stops of every new delivery assignment to an Excel workbook so
the expedition desk has a printable manifest. One row per route point.

Called from the Celery worker, so several processes may write the same
workbook; every read-modify-write happens under a file lock.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import pandas as pd
from filelock import FileLock, Timeout

from dispatch.core.config import get_settings
import logging

logger = logging.getLogger(__name__)


class RouteSheetManager:
    """Process-safe Excel route sheet writer."""

    COLUMNS = [
        "assignment_id",
        "route_name",
        "branch_id",
        "courier_id",
        "assignment_status",
        "stop_sequence",
        "stop_label",
        "order_id",
        "address",
        "latitude",
        "longitude",
        "estimated_distance_m",
        "estimated_time_min",
        "created_at",
        "exported_at",
    ]

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        filename: Optional[str] = None,
        lock_timeout: Optional[int] = None,
    ):
        settings = get_settings()
        self.data_dir = Path(data_dir or settings.data_directory)
        self.file_path = self.data_dir / (filename or settings.route_sheet_filename)
        self.lock_path = self.file_path.with_name(self.file_path.name + ".lock")
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.excel_lock_timeout

    def _ensure_data_dir(self) -> None:
        if not self.data_dir.exists():
            self.data_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {self.data_dir}")

    def _load_or_create_df(self) -> pd.DataFrame:
        """Load existing sheet or create an empty one."""
        if self.file_path.exists():
            return pd.read_excel(self.file_path, engine="openpyxl")
        return pd.DataFrame(columns=self.COLUMNS)

    def export_assignment(self, assignment: dict[str, Any]) -> dict[str, Any]:
        """
        Append one assignment's route to the sheet.

        Args:
            assignment: Export payload (see AssignmentView.to_export_dict)

        Returns:
            dict: success flag, message, assignment id, rows written
        """
        self._ensure_data_dir()

        assignment_id = assignment.get("id")
        result = {
            "success": False,
            "message": "",
            "assignment_id": assignment_id,
            "rows": 0,
            "exported_at": None,
        }

        try:
            lock = FileLock(str(self.lock_path), timeout=self.lock_timeout)

            with lock:
                logger.debug(f"Lock acquired for Assignment #{assignment_id}")

                df = self._load_or_create_df()

                export_time = datetime.now().isoformat()
                new_rows = [
                    {
                        "assignment_id": assignment_id,
                        "route_name": assignment.get("name"),
                        "branch_id": assignment.get("branch_id"),
                        "courier_id": assignment.get("courier_id"),
                        "assignment_status": assignment.get("status"),
                        "stop_sequence": sequence,
                        "stop_label": point.get("label"),
                        "order_id": point.get("order_id"),
                        "address": point.get("address"),
                        "latitude": point.get("lat"),
                        "longitude": point.get("lng"),
                        "estimated_distance_m": assignment.get("estimated_distance"),
                        "estimated_time_min": assignment.get("estimated_time"),
                        "created_at": assignment.get("created_at", export_time),
                        "exported_at": export_time,
                    }
                    for sequence, point in enumerate(assignment.get("route", []))
                ]

                frames = [frame for frame in (df, pd.DataFrame(new_rows, columns=self.COLUMNS)) if not frame.empty]
                df = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=self.COLUMNS)
                df.to_excel(str(self.file_path), index=False, engine="openpyxl")

                logger.info(f"Assignment #{assignment_id} route sheet exported ({len(new_rows)} rows)")

                result["success"] = True
                result["message"] = f"Assignment #{assignment_id} exported"
                result["rows"] = len(new_rows)
                result["exported_at"] = export_time

            logger.debug(f"Lock released for Assignment #{assignment_id}")

        except Timeout:
            result["message"] = f"Lock timeout ({self.lock_timeout}s)"
            logger.error(f"Lock timeout for Assignment #{assignment_id}")

        return result

    def get_rows(self, assignment_id: Optional[int] = None) -> list[dict[str, Any]]:
        """Rows of the sheet, optionally for one assignment."""
        if not self.file_path.exists():
            return []

        df = pd.read_excel(self.file_path, engine="openpyxl")
        if assignment_id is not None:
            df = df[df["assignment_id"] == assignment_id]
        return df.to_dict("records")

    def clear(self) -> None:
        """Delete the sheet and its lock file."""
        for path in (self.file_path, self.lock_path):
            if path.exists():
                path.unlink()
        logger.info("Route sheet cleared")
