import pytest
import xml.etree.ElementTree as ET

from cirunner.parser.coverage_reader import parse_cobertura, read_coverage_reports
from cirunner.parser.junit_reader import find_report_files, parse_junit_file, read_junit_results

PYTEST_XML = """<?xml version="1.0" encoding="utf-8"?>
<testsuites>
  <testsuite name="pytest" tests="4" failures="1" errors="1" skipped="1">
    <testcase classname="tests.unit.test_agent" name="test_ok" time="0.01"/>
    <testcase classname="tests.unit.test_agent" name="test_bad" time="0.02">
      <failure message="assert 1 == 2">AssertionError</failure>
    </testcase>
    <testcase classname="tests.unit.test_agent" name="test_boom">
      <error message="fixture failed"/>
    </testcase>
    <testcase classname="tests.unit.test_agent" name="test_later">
      <skipped message="not today"/>
    </testcase>
  </testsuite>
</testsuites>
"""

VITEST_XML = """<testsuite name="vitest" tests="2">
  <testcase classname="src/App.test.tsx" name="renders"/>
  <testcase name="loads"/>
</testsuite>
"""


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "test-results-unit.xml").write_text(PYTEST_XML)
    (tmp_path / "frontend" / "coverage").mkdir(parents=True)
    (tmp_path / "frontend" / "coverage" / "junit.xml").write_text(VITEST_XML)
    return tmp_path


# ---------------------------------------------------------------------------
# JUnit
# ---------------------------------------------------------------------------
def test_parse_counts_by_testcase(workspace):
    summary = parse_junit_file(str(workspace / "test-results-unit.xml"), "test-results-unit.xml")
    assert summary.total == 4
    assert summary.failures == 1
    assert summary.errors == 1
    assert summary.skipped == 1
    assert summary.failed == 2
    assert summary.failed_cases == [
        "tests.unit.test_agent.test_bad",
        "tests.unit.test_agent.test_boom",
    ]
    assert summary.files == ["test-results-unit.xml"]


def test_single_testsuite_root(workspace):
    summary = parse_junit_file(str(workspace / "frontend" / "coverage" / "junit.xml"))
    assert summary.total == 2
    assert summary.failed == 0


def test_glob_merges_files(workspace):
    summary = read_junit_results(str(workspace), "**/*.xml")
    assert summary.files == ["frontend/coverage/junit.xml", "test-results-unit.xml"]
    assert summary.total == 6
    assert summary.failed == 2


def test_no_match_is_empty(workspace):
    summary = read_junit_results(str(workspace), "nothing-*.xml")
    assert summary.files == []
    assert summary.total == 0


def test_wrong_root_rejected(tmp_path):
    path = tmp_path / "r.xml"
    path.write_text("<html><body/></html>")
    with pytest.raises(ValueError, match="Unexpected JUnit root"):
        parse_junit_file(str(path))


def test_malformed_xml(tmp_path):
    path = tmp_path / "r.xml"
    path.write_text("<testsuite><testcase")
    with pytest.raises(ET.ParseError):
        parse_junit_file(str(path))


def test_find_report_files_skips_directories(tmp_path):
    (tmp_path / "reports.xml").mkdir()
    (tmp_path / "a.xml").write_text("<testsuite/>")
    assert find_report_files(str(tmp_path), "*.xml") == ["a.xml"]


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------
COBERTURA = (
    '<?xml version="1.0" ?>\n'
    '<coverage version="7.4.0" line-rate="0.8123" branch-rate="0.6" '
    'lines-valid="1000" lines-covered="812" timestamp="1700000000">'
    "<packages/></coverage>"
)


def test_parse_cobertura(tmp_path):
    path = tmp_path / "coverage-unit.xml"
    path.write_text(COBERTURA)
    report = parse_cobertura(str(path), "coverage-unit.xml")
    assert report.adapter == "cobertura"
    assert report.line_rate == pytest.approx(0.8123)
    assert report.branch_rate == pytest.approx(0.6)
    assert report.lines_valid == 1000
    assert report.lines_covered == 812


def test_cobertura_missing_attributes(tmp_path):
    path = tmp_path / "c.xml"
    path.write_text("<coverage/>")
    report = parse_cobertura(str(path))
    assert report.line_rate == 0.0
    assert report.branch_rate is None


def test_cobertura_wrong_root(tmp_path):
    path = tmp_path / "c.xml"
    path.write_text("<report/>")
    with pytest.raises(ValueError, match="Not a Cobertura report"):
        parse_cobertura(str(path))


def test_read_coverage_reports(tmp_path):
    (tmp_path / "coverage-unit.xml").write_text(COBERTURA)
    (tmp_path / "coverage-runtime.xml").write_text(COBERTURA)
    reports = read_coverage_reports(str(tmp_path), "coverage-*.xml")
    assert [r.file for r in reports] == ["coverage-runtime.xml", "coverage-unit.xml"]


def test_unknown_adapter(tmp_path):
    with pytest.raises(KeyError):
        read_coverage_reports(str(tmp_path), "*.xml", adapter="jacoco")
