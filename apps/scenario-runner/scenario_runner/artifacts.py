"""Run artifacts: event stream, summary and JUnit XML."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Union
import json
import xml.etree.ElementTree as ET

from pydantic import BaseModel

from .models import AggregatedScenarioReport, RunSummary, ScenarioReport


@dataclass
class RunArtifacts:
    run_dir: Path
    events_file: Path
    summary_file: Path
    junit_file: Path

    @classmethod
    def prepare(cls, output_root: Path, run_id: str) -> "RunArtifacts":
        run_dir = output_root / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        return cls(
            run_dir=run_dir,
            events_file=run_dir / "events.jsonl",
            summary_file=run_dir / "summary.json",
            junit_file=run_dir / "results.junit.xml",
        )

    def write(
        self,
        summary: Union[RunSummary, AggregatedScenarioReport],
        reports: Iterable[ScenarioReport],
    ) -> None:
        reports = list(reports)
        write_events(reports, self.events_file)
        write_summary(summary, self.summary_file)
        write_junit(reports, self.junit_file)


def write_events(reports: list[ScenarioReport], events_file: Path) -> None:
    with events_file.open("w", encoding="utf-8") as handle:
        for run, report in enumerate(reports, start=1):
            for step in report.steps:
                record = step.model_dump(mode="json", exclude={"traceback"})
                record.update({"scenario_id": report.scenario_id, "run": run, "user_id": report.user_id})
                handle.write(json.dumps(record) + "\n")


def write_summary(summary: BaseModel, summary_file: Path) -> None:
    summary_file.write_text(summary.model_dump_json(indent=2), encoding="utf-8")


def write_junit(reports: list[ScenarioReport], junit_file: Path) -> None:
    root = ET.Element("testsuites")
    repeated = len({report.scenario_id for report in reports}) < len(reports)
    for run, report in enumerate(reports, start=1):
        suite = ET.SubElement(
            root,
            "testsuite",
            attrib={
                "name": f"{report.scenario_id}#{run}" if repeated else report.scenario_id,
                "tests": str(len(report.steps)),
                "failures": str(report.count("failed")),
                "errors": str(report.count("error")),
                "skipped": str(report.count("skipped")),
                "time": str(report.duration_ms / 1000),
            },
        )
        for step in report.steps:
            case = ET.SubElement(
                suite,
                "testcase",
                attrib={
                    "classname": report.scenario_id,
                    "name": step.display_name,
                    "time": str(step.duration_ms / 1000),
                },
            )
            if step.status in ("failed", "error"):
                failure = ET.SubElement(
                    case,
                    "failure" if step.status == "failed" else "error",
                    attrib={"message": step.error or f"Step {step.status}"},
                )
                failure.text = step.traceback or step.error or ""
            elif step.status == "skipped":
                ET.SubElement(case, "skipped")
    ET.ElementTree(root).write(junit_file, encoding="utf-8", xml_declaration=True)
