"""
JSON plan/apply report generator.
"""
import json
from datetime import datetime, timezone
from typing import List

from provgraph import __version__
from provgraph.models.report import ApplyReport, Outcome, PlanEntry


def _meta(source_path: str) -> dict:
    return {
        "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "source": source_path,
        "tool": "provgraph",
        "version": __version__,
    }


def build_plan_report(entries: List[PlanEntry], source_path: str) -> str:
    report = {
        "meta": _meta(source_path),
        "order": [e.node_id for e in entries],
        "nodes": [e.to_dict() for e in entries],
    }
    return json.dumps(report, indent=2)


def build_apply_report(report: ApplyReport, source_path: str) -> str:
    payload = {
        "meta": _meta(source_path),
        "summary": {o.value: len(report.by_outcome(o)) for o in Outcome},
        **report.to_dict(),
    }
    return json.dumps(payload, indent=2)
