"""
JUnit Reader
============
Parses JUnit XML result files (pytest --junitxml, vitest/jest junit
reporters) into a JUnitSummary.

Accepted roots:
    <testsuites> containing <testsuite> elements, or a single <testsuite>.

Counts are taken from the <testcase> elements rather than the suite
attributes, which some reporters leave out or get wrong.
"""
import glob
import os
import logging
import xml.etree.ElementTree as ET
from typing import List

from cirunner.models.run_result import JUnitSummary
from cirunner.utils.path_utils import normalize_path

logger = logging.getLogger(__name__)


def find_report_files(workspace: str, pattern: str) -> List[str]:
    """Workspace-relative paths of files matching a glob, sorted."""
    matches = glob.glob(os.path.join(workspace, pattern), recursive=True)
    return sorted(
        normalize_path(os.path.relpath(m, workspace))
        for m in matches
        if os.path.isfile(m)
    )


def _iter_suites(root: ET.Element):
    if root.tag == "testsuite":
        yield root
    for suite in root.iter("testsuite"):
        if suite is not root:
            yield suite


def parse_junit_file(path: str, display_name: str = "") -> JUnitSummary:
    """
    Parse one JUnit XML file.

    Raises
    ------
    ET.ParseError
        If the file is not well-formed XML.
    ValueError
        If the root element is neither <testsuites> nor <testsuite>.
    """
    tree = ET.parse(path)
    root = tree.getroot()
    if root.tag not in ("testsuites", "testsuite"):
        raise ValueError(f"Unexpected JUnit root element <{root.tag}>")

    summary = JUnitSummary(files=[display_name or path])
    for suite in _iter_suites(root):
        for case in suite.findall("testcase"):
            summary.total += 1
            name = case.get("name", "?")
            classname = case.get("classname", "")
            full_name = f"{classname}.{name}" if classname else name
            if case.find("failure") is not None:
                summary.failures += 1
                summary.failed_cases.append(full_name)
            elif case.find("error") is not None:
                summary.errors += 1
                summary.failed_cases.append(full_name)
            elif case.find("skipped") is not None:
                summary.skipped += 1
    return summary


def read_junit_results(workspace: str, pattern: str) -> JUnitSummary:
    """
    Parse and total every JUnit file matching ``pattern``.

    Returns an empty summary (files == []) when nothing matches.
    """
    total = JUnitSummary()
    for rel in find_report_files(workspace, pattern):
        summary = parse_junit_file(os.path.join(workspace, rel), display_name=rel)
        logger.info(
            "JUnit %s: %d tests, %d failures, %d errors, %d skipped",
            rel, summary.total, summary.failures, summary.errors, summary.skipped,
        )
        total = total.merge(summary)
    return total
