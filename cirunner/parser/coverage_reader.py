"""
Coverage Reader
===============
Reads coverage XML reports through a named adapter.

Adapters:
    cobertura — coverage.py ``--cov-report=xml`` and istanbul's cobertura
                reporter. Totals come from the root <coverage> element.
"""
import os
import logging
import xml.etree.ElementTree as ET
from typing import Callable, Dict, List, Optional

from cirunner.models.run_result import CoverageReport
from cirunner.parser.junit_reader import find_report_files

logger = logging.getLogger(__name__)


def _opt_float(value: Optional[str]) -> Optional[float]:
    return float(value) if value not in (None, "") else None


def _opt_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


def parse_cobertura(path: str, display_name: str = "") -> CoverageReport:
    root = ET.parse(path).getroot()
    if root.tag != "coverage":
        raise ValueError(f"Not a Cobertura report (root <{root.tag}>)")
    return CoverageReport(
        adapter="cobertura",
        file=display_name or path,
        line_rate=_opt_float(root.get("line-rate")) or 0.0,
        branch_rate=_opt_float(root.get("branch-rate")),
        lines_valid=_opt_int(root.get("lines-valid")),
        lines_covered=_opt_int(root.get("lines-covered")),
    )


_ADAPTERS: Dict[str, Callable[[str, str], CoverageReport]] = {
    "cobertura": parse_cobertura,
}


def read_coverage_reports(workspace: str, pattern: str, adapter: str = "cobertura") -> List[CoverageReport]:
    """
    Parse every coverage file matching ``pattern`` with ``adapter``.

    Raises
    ------
    KeyError
        Unknown adapter name.
    """
    parser = _ADAPTERS[adapter]
    reports: List[CoverageReport] = []
    for rel in find_report_files(workspace, pattern):
        report = parser(os.path.join(workspace, rel), rel)
        logger.info("Coverage %s: line-rate=%.3f", rel, report.line_rate)
        reports.append(report)
    return reports
