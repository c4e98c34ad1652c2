# reports.py
"""
Artifact/Report collector.

Jobs declare report paths (`store_test_results`); the executor attaches the
raw bytes to the JobRun and this module turns them into normalized
`JUnitReport`s once the job is terminal. A report that does not parse is a
warning on the JobRun, never a failed pipeline.

`export_junit` goes the other way: it renders a whole run as JUnit XML so
dashboards that already ingest test results can show pipeline outcomes.
"""
from __future__ import annotations

import logging
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ReportParseError
from .model import JobState, WorkflowRunSnapshot

logger = logging.getLogger(__name__)

OUTPUT_TAIL = 4000


@dataclass
class CaseResult:
    name: str
    classname: str = ""
    time: float = 0.0
    status: str = "passed"  # passed | failed | error | skipped
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "classname": self.classname,
            "time": self.time,
            "status": self.status,
            "message": self.message,
        }


@dataclass
class JUnitReport:
    job: str
    source: str
    cases: List[CaseResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for c in self.cases if c.status == status)

    @property
    def tests(self) -> int:
        return len(self.cases)

    @property
    def failures(self) -> int:
        return self.count("failed")

    @property
    def errors(self) -> int:
        return self.count("error")

    @property
    def skipped(self) -> int:
        return self.count("skipped")

    @property
    def time(self) -> float:
        return round(sum(c.time for c in self.cases), 6)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "source": self.source,
            "tests": self.tests,
            "failures": self.failures,
            "errors": self.errors,
            "skipped": self.skipped,
            "time": self.time,
            "cases": [c.to_dict() for c in self.cases],
        }


def _float(value: Optional[str]) -> float:
    try:
        return float(value) if value else 0.0
    except ValueError:
        return 0.0


def _case(el: ET.Element, suite_name: str) -> CaseResult:
    case = CaseResult(
        name=el.get("name", ""),
        # nextest and friends sometimes leave classname empty; use the suite
        classname=el.get("classname") or suite_name,
        time=_float(el.get("time")),
    )
    for tag, status in (("failure", "failed"), ("error", "error"), ("skipped", "skipped")):
        child = el.find(tag)
        if child is not None:
            case.status = status
            case.message = (child.get("message") or (child.text or "")).strip()
            break
    return case


def parse_junit(blob: bytes, *, job: str = "", source: str = "") -> JUnitReport:
    """
    Parse a JUnit XML document (<testsuites> or a bare <testsuite>).
    Nested suites are flattened into one list of cases.
    """
    try:
        root = ET.fromstring(blob)
    except ET.ParseError as e:
        raise ReportParseError(job, source, str(e)) from e

    if root.tag not in ("testsuites", "testsuite"):
        raise ReportParseError(job, source, f"unexpected root element <{root.tag}>")

    report = JUnitReport(job=job, source=source)
    suites = [root] if root.tag == "testsuite" else list(root.iter("testsuite"))
    for suite in suites:
        suite_name = suite.get("name", "")
        for el in suite.findall("testcase"):
            report.cases.append(_case(el, suite_name))
    return report


class ReportCollector:
    """
    Keeps normalized reports keyed by (run id, job name).

    Wire it to a scheduler with `collector.attach(scheduler)`; reports of runs
    the scheduler drops from memory are dropped with them.
    """

    def __init__(self) -> None:
        self._reports: Dict[Tuple[str, str], List[JUnitReport]] = {}
        self._lock = threading.Lock()

    def attach(self, scheduler) -> "ReportCollector":
        scheduler.subscribe(self.on_job_finished)
        scheduler.subscribe_evictions(self.forget)
        return self

    def forget(self, run_id: str) -> None:
        with self._lock:
            for key in [k for k in self._reports if k[0] == run_id]:
                del self._reports[key]

    def on_job_finished(self, event) -> None:
        job_run = event.job
        if not job_run.artifacts:
            return

        parsed: List[JUnitReport] = []
        for source, blob in sorted(job_run.artifacts.items()):
            try:
                parsed.append(parse_junit(blob, job=job_run.name, source=source))
            except ReportParseError as e:
                logger.warning("%s", e)
                event.warn(str(e))

        with self._lock:
            self._reports[(event.run_id, job_run.name)] = parsed
        logger.info(
            "run %s: collected %d report(s) for %s", event.run_id, len(parsed), job_run.name
        )

    def get(self, run_id: str, job: str) -> List[JUnitReport]:
        with self._lock:
            return list(self._reports.get((run_id, job), []))

    def for_run(self, run_id: str) -> Dict[str, List[JUnitReport]]:
        with self._lock:
            return {job: list(r) for (rid, job), r in self._reports.items() if rid == run_id}


def export_junit(snapshot: WorkflowRunSnapshot, collector: Optional[ReportCollector] = None) -> bytes:
    """
    Render a run as JUnit XML: one <testsuite> for the pipeline (a testcase
    per job) followed by one <testsuite> per collected report.
    """
    root = ET.Element("testsuites", name=snapshot.workflow)

    pipeline = ET.SubElement(root, "testsuite", name=snapshot.workflow, id=snapshot.id)
    counts = {"tests": 0, "failures": 0, "skipped": 0}
    total_time = 0.0

    for name in snapshot.order:
        job_run = snapshot.jobs[name]
        duration = job_run.duration or 0.0
        total_time += duration
        counts["tests"] += 1
        el = ET.SubElement(pipeline, "testcase", name=name, classname=snapshot.workflow, time=f"{duration:.3f}")

        if job_run.state is JobState.FAILED:
            counts["failures"] += 1
            failure = ET.SubElement(el, "failure", message=job_run.reason.value, type=job_run.reason.value)
            failure.text = job_run.detail
            output = job_run.output
            if output:
                ET.SubElement(el, "system-out").text = output[-OUTPUT_TAIL:]
        elif job_run.state is JobState.SKIPPED:
            counts["skipped"] += 1
            ET.SubElement(el, "skipped", message=f"{job_run.reason.value}: {job_run.detail}".strip(": "))

    for k, v in counts.items():
        pipeline.set(k, str(v))
    pipeline.set("time", f"{total_time:.3f}")

    if collector is not None:
        for job, reports in sorted(collector.for_run(snapshot.id).items()):
            for report in reports:
                suite = ET.SubElement(
                    root,
                    "testsuite",
                    name=f"{job}:{report.source}",
                    tests=str(report.tests),
                    failures=str(report.failures),
                    errors=str(report.errors),
                    skipped=str(report.skipped),
                    time=f"{report.time:.3f}",
                )
                for case in report.cases:
                    el = ET.SubElement(suite, "testcase", name=case.name, classname=case.classname, time=f"{case.time:.3f}")
                    if case.status in ("failed", "error", "skipped"):
                        tag = {"failed": "failure", "error": "error", "skipped": "skipped"}[case.status]
                        ET.SubElement(el, tag, message=case.message)

    return ET.tostring(root, encoding="utf-8", xml_declaration=True)
