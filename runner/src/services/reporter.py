"""
Test report collection and run publishing.
"""

import glob
import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from runner.src.errors import ReportingWarning
from runner.src.models.pipeline import ReportSpec
from runner.src.models.run import Artifact, PipelineRun, ReportSummary
from runner.src.services.run_log import RunLog

logger = logging.getLogger(__name__)

COUNTERS = ("tests", "failures", "errors", "skipped")

def _count(element: ET.Element, name: str) -> int:
    value = element.get(name)
    if value is None and name == "skipped":
        value = element.get("disabled")
    if value is None:
        return 0
    try:
        return int(float(value))
    except ValueError:
        raise ValueError(f"attribute {name}={value!r} is not a number")

def _summarize_suite(suite: ET.Element) -> ReportSummary:
    if suite.get("tests") is not None:
        return ReportSummary(**{name: _count(suite, name) for name in COUNTERS})

    # No totals on the suite, count test cases instead
    summary = ReportSummary()
    for case in suite.iter("testcase"):
        summary.tests += 1
        if case.find("failure") is not None:
            summary.failures += 1
        elif case.find("error") is not None:
            summary.errors += 1
        elif case.find("skipped") is not None:
            summary.skipped += 1
    return summary

def parse_test_report(path: Path) -> ReportSummary:
    """
    Parse a JUnit-style XML report into pass/fail/error counts.

    Accepts a single ``<testsuite>`` or a ``<testsuites>`` wrapper. Raises
    ValueError (or ET.ParseError) for malformed documents.
    """
    root = ET.parse(path).getroot()

    if root.tag == "testsuite":
        return _summarize_suite(root)

    if root.tag == "testsuites":
        summary = ReportSummary()
        for suite in root.iter("testsuite"):
            summary = summary + _summarize_suite(suite)
        return summary

    raise ValueError(f"unexpected root element <{root.tag}>")

def _resolve(spec: ReportSpec, workspace: Path) -> List[Path]:
    if glob.has_magic(spec.path):
        return sorted(Path(p) for p in glob.glob(str(workspace / spec.path), recursive=True))
    path = workspace / spec.path
    return [path] if path.exists() else []

def collect(
    specs: Iterable[ReportSpec],
    workspace: Path,
) -> Tuple[List[Artifact], List[ReportingWarning]]:
    """
    Collect declared report files.

    Returns the parsed artifacts and a list of ReportingWarnings for missing
    or malformed files. Nothing is raised: callers decide what a warning on
    a required report means.
    """
    artifacts: List[Artifact] = []
    problems: List[ReportingWarning] = []

    for spec in specs:
        paths = _resolve(spec, workspace)
        if not paths:
            problems.append(ReportingWarning(
                f"No test report found at '{spec.path}'", spec.path, spec.required
            ))
            continue

        for path in paths:
            display = _display_path(path, workspace)
            try:
                summary = parse_test_report(path)
            except (ET.ParseError, ValueError, OSError) as e:
                problems.append(ReportingWarning(
                    f"Malformed test report '{display}': {e}", display, spec.required
                ))
                continue
            artifacts.append(Artifact(path=display, kind="test-report", summary=summary))

    for problem in problems:
        logger.warning(str(problem))

    return artifacts, problems

def _display_path(path: Path, workspace: Path) -> str:
    try:
        return str(path.relative_to(workspace))
    except ValueError:
        return str(path)

def summarize(artifacts: Iterable[Artifact]) -> Optional[ReportSummary]:
    summaries = [a.summary for a in artifacts if a.summary is not None]
    if not summaries:
        return None
    total = ReportSummary()
    for summary in summaries:
        total = total + summary
    return total

def publish(run: PipelineRun, run_log: Optional[RunLog]) -> None:
    """Append the run's terminal status and artifact manifest to the run log."""
    stages = ", ".join(f"{s.stage}={s.status.value}" for s in run.stages) or "no stages"
    logger.info(f"Run {run.run_id} ({run.pipeline_name}) finished: {run.status.value} [{stages}]")

    if run_log is not None:
        run_log.append(run.manifest())
