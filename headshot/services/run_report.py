"""
Run report.

Writes a RunSummary to JSON and reads back the failed inputs of an earlier
report, so a later run can retry just those files.
"""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json
import logging

from domain.errors import ConfigurationError
from domain.models import CropConfig, ProcessStatus, RunSummary

logger = logging.getLogger(__name__)

REPORT_VERSION = 1


def build_report(summary: RunSummary, config: Optional[CropConfig] = None) -> Dict[str, Any]:
    report: Dict[str, Any] = {
        "version": REPORT_VERSION,
        "created_at": datetime.now(timezone.utc).isoformat(),
        **summary.to_dict(),
    }
    if config is not None:
        report["config"] = config.to_dict()
    return report


def write_report(summary: RunSummary, path: Union[str, Path], config: Optional[CropConfig] = None) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(build_report(summary, config), indent=2), encoding="utf-8")
    logger.info("Wrote run report %s", path)
    return path


def load_failed_paths(path: Union[str, Path]) -> List[Path]:
    """
    Input paths recorded as failed in a report, in their original order.

    Raises:
        ConfigurationError: If the report is missing or malformed
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        results = data["results"]
        return [
            Path(r["source_path"])
            for r in results
            if r.get("status") == ProcessStatus.FAILED.value
        ]
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
        raise ConfigurationError(f"Cannot read run report: {e}", source_path=path) from e


def format_summary(summary: RunSummary) -> List[str]:
    """Human-readable summary lines: counts, then one line per failure."""
    lines = [
        f"Processed {summary.total} image(s): {summary.succeeded} succeeded, "
        f"{summary.skipped} skipped, {summary.failed} failed"
        + (" (cancelled)" if summary.cancelled else "")
    ]
    for failure in summary.failures:
        lines.append(f"  FAILED {failure.source_path} [{failure.error_kind.value}] {failure.message or ''}".rstrip())
    return lines
