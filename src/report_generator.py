"""
Per-file import reporting: rejected-rows CSV, JSON summary and a text summary.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import pandas as pd
import structlog

from models import FileImportResult, RejectedRow

logger = structlog.get_logger()


class ReportGenerator:
    """Builds CSV, JSON and text summaries from a file import result."""

    def __init__(self, report_prefix: str = "import_report") -> None:
        self.report_prefix = report_prefix

    def generate_all_reports(
        self, result: FileImportResult, output_dir: Path
    ) -> Tuple[Optional[Path], str, Path]:
        """
        Writes the JSON summary and, when rows were rejected, the rejected-rows
        CSV. Returns (csv_path or None, summary_text, json_path).
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        csv_path = self._generate_rejected_csv(result, output_dir)
        summary_text = self._generate_summary(result)
        json_path = self._generate_json_report(result, output_dir)

        return csv_path, summary_text, json_path

    def _base_name(self, result: FileImportResult) -> str:
        stem = Path(result.file_name).stem
        stamp = result.started_at.strftime("%Y%m%d_%H%M%S")
        return f"{self.report_prefix}_{stem}_{stamp}"

    def _generate_rejected_csv(
        self, result: FileImportResult, output_dir: Path
    ) -> Optional[Path]:
        if not result.rejected_rows:
            return None

        csv_path = output_dir / f"{self._base_name(result)}_rejected.csv"
        df = pd.DataFrame(
            [row.model_dump() for row in result.rejected_rows],
            columns=list(RejectedRow.model_fields.keys()),
        )
        df.to_csv(csv_path, index=False, sep=";")
        logger.info("Wrote rejected rows CSV", path=str(csv_path), rows=len(df))
        return csv_path

    def _generate_summary(self, result: FileImportResult) -> str:
        stats = result.stats
        duration = self._duration_seconds(result)

        report = f"""
Fuel Transaction Import Summary
===============================

File: {result.file_name}
Profile: {result.profile.value}
Status: {result.status.value}
Started: {result.started_at.strftime('%Y-%m-%d %H:%M:%S')}
Duration: {duration:.1f}s

ROWS
----
Read: {stats.rows_read:,}
Transactions inserted: {stats.transactions_inserted:,}
Transactions updated: {stats.transactions_updated:,}
Payments inserted: {stats.payments_inserted:,}
Payments updated: {stats.payments_updated:,}
Payments unchanged: {stats.payments_unchanged:,}

SKIPPED
-------
Duplicates: {stats.skipped_duplicate:,}
Errors: {stats.skipped_error:,}
Too old: {stats.skipped_too_old:,}
No transaction: {stats.skipped_no_transaction:,}

Warnings: {stats.warnings:,}
"""
        if result.error_message:
            report += f"\nError: {result.error_message}\n"
        return report.strip()

    def _generate_json_report(
        self, result: FileImportResult, output_dir: Path
    ) -> Path:
        json_path = output_dir / f"{self._base_name(result)}.json"

        report_data: Dict[str, Any] = {
            "report_metadata": {"generated_at": datetime.utcnow().isoformat()},
            "import_summary": {
                "file_name": result.file_name,
                "profile": result.profile.value,
                "status": result.status.value,
                "run_id": result.run_id,
                "started_at": result.started_at,
                "finished_at": result.finished_at,
                "duration_seconds": self._duration_seconds(result),
                "error_message": result.error_message,
            },
            "stats": result.stats.model_dump(),
            "rejected_rows": [row.model_dump() for row in result.rejected_rows],
        }

        with open(json_path, "w") as f:
            json.dump(report_data, f, indent=2, default=str)

        logger.info("Wrote JSON report", path=str(json_path))
        return json_path

    @staticmethod
    def _duration_seconds(result: FileImportResult) -> float:
        if result.finished_at is None:
            return 0.0
        return (result.finished_at - result.started_at).total_seconds()
