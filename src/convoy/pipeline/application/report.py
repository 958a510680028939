"""Build and persist the structured run report (report.json)."""

import json
from pathlib import Path
from typing import Any, Dict, Union

from convoy.pipeline.domain.models import PipelineResult
from convoy.shared.domain.exceptions import ReportError
from convoy.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

REPORT_VERSION = 1


def build_report(result: PipelineResult) -> Dict[str, Any]:
    """
    Convert a PipelineResult into the report document.

    Per-stage status, timestamps, action logs and published artifacts are
    carried verbatim; report files produced by scanners or analyzers appear
    only as paths.
    """
    report = result.to_json()
    report["reportVersion"] = REPORT_VERSION
    report["summary"] = result.summary()
    return report


def write_report(result: PipelineResult, path: Union[str, Path]) -> Path:
    """
    Write report.json and record its location on the result.

    Raises:
        ReportError: If the report cannot be written
    """
    path = Path(path)
    result.report_path = str(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(build_report(result), indent=2), encoding="utf-8")
    except OSError as e:
        logger.error("report_write_failed", path=str(path), error=str(e))
        raise ReportError(f"Cannot write report {path}: {e}", {"path": str(path)}) from e
    logger.info("report_written", path=str(path), verdict=result.verdict.value)
    return path
