"""
Markdown + Mermaid plan/apply report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from jinja2 import Environment

from provgraph import __version__
from provgraph.graph.dependency import DependencyGraph, EvaluationPlan
from provgraph.models.report import ApplyReport, Outcome, PlanEntry

_OUTCOME_EMOJI = {
    "APPLIED": "🟢",
    "FAILED": "🔴",
    "SKIPPED": "⚪",
}

_OUTCOME_ASCII = {
    "APPLIED": "[OK]",
    "FAILED": "[FAILED]",
    "SKIPPED": "[SKIPPED]",
}

_OUTCOME_STYLE = {
    "APPLIED": "fill:#88cc00,color:#000",
    "FAILED": "fill:#ff4444,color:#fff",
    "SKIPPED": "fill:#dddddd,color:#000",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _mermaid_ids(node_ids: List[str]) -> Dict[str, str]:
    """Sanitized Mermaid id per node; ids that sanitize alike get a numeric suffix."""
    ids: Dict[str, str] = {}
    taken = set()
    for nid in node_ids:
        base = candidate = _sanitize_node_id(nid)
        n = 2
        while candidate in taken:
            candidate = f"{base}_{n}"
            n += 1
        taken.add(candidate)
        ids[nid] = candidate
    return ids


def _cell(value: object) -> str:
    """Make text safe inside a Markdown table cell."""
    return str(value).replace("|", "\\|").replace("\r\n", "<br>").replace("\n", "<br>")


def _code(value: object) -> str:
    """Inline code span for a table cell."""
    text = _cell(value)
    if "`" in text:
        return f"`` {text} ``"
    return f"`{text}`"


def _provider_of(kind: str) -> str:
    """'aws:s3:Bucket' and 'aws_s3_bucket' both belong to 'aws'."""
    return re.split(r"[:_]", kind, maxsplit=1)[0] or "other"


def _build_mermaid(
    graph: DependencyGraph,
    plan: EvaluationPlan,
    outcomes: Optional[Dict[str, Outcome]] = None,
) -> str:
    subgraphs: Dict[str, List[str]] = defaultdict(list)
    for nid in plan.order:
        subgraphs[_provider_of(graph.get(nid).kind)].append(nid)

    ids = _mermaid_ids(plan.order)
    lines = ["flowchart LR"]
    for provider in sorted(subgraphs):
        lines.append(f"    subgraph {provider}")
        for nid in subgraphs[provider]:
            label = nid.replace('"', "#quot;")
            lines.append(f"        {ids[nid]}[\"{label}\"]")
        lines.append("    end")

    for nid in plan.order:
        for producer in plan.depends_on.get(nid, []):
            lines.append(f"    {ids[producer]} --> {ids[nid]}")

    for nid, outcome in (outcomes or {}).items():
        style = _OUTCOME_STYLE.get(outcome.value)
        if style:
            lines.append(f"    style {ids[nid]} {style}")

    return "\n".join(lines)


_PLAN_TEMPLATE = """\
# Provisioning Plan

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** provgraph v{{ version }}

---

## Apply Order

{{ entries|length }} resource(s) in {{ levels }} level(s). Resources on the same level do not depend on each other.

| # | Level | Resource | Kind | Depends on |
|---|-------|----------|------|------------|
{% for e in entries %}| {{ loop.index }} | {{ e.level }} | {{ e.node_id|code }} | {{ e.kind|code }} | {{ e.depends_on|join(", ")|cell or "-" }} |
{% endfor %}

---

## Inputs
{% for e in entries %}
### {{ e.node_id }}

| Input | Value |
|-------|-------|
{% for k, v in e.rendered_inputs.items() %}| {{ k|code }} | {{ v|code }} |
{% endfor %}{% endfor %}

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


_APPLY_TEMPLATE = """\
# Apply Report

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** provgraph v{{ version }}
**Run status:** {{ report.status.value }}

---

## Summary
{% for status in ["APPLIED", "FAILED", "SKIPPED"] %}
- **{{ status }}**: {{ counts[status] }}{% endfor %}

{% if report.status.value == "ABORTED" %}
The run was aborted. Resources applied before the failure were left in place; fix the failure and re-run to converge.
{% else %}
All resources converged.
{% endif %}

---

## Resources

| # | Resource | Kind | Status | Action | Attempts | Detail |
|---|----------|------|--------|--------|----------|--------|
{% for n in report.nodes %}| {{ loop.index }} | {{ n.node_id|code }} | {{ n.kind|code }} | {{ icon[n.status.value] }} {{ n.status.value }} | {{ n.action or "-" }} | {{ n.attempts }} | {{ (n.error or n.reason or "")|cell }} |
{% endfor %}

---

## Outputs
{% for n in report.nodes if n.rendered_outputs %}
### {{ n.node_id }}

| Output | Value |
|--------|-------|
{% for k, v in n.rendered_outputs.items() %}| {{ k|code }} | {{ v|code }} |
{% endfor %}{% endfor %}
{% if report.exports %}
## Exports

| Name | Value |
|------|-------|
{% for k, v in report.exports.items() %}| {{ k|code }} | {{ v|code }} |
{% endfor %}{% endif %}

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def _env() -> Environment:
    env = Environment(autoescape=False)
    env.filters["cell"] = _cell
    env.filters["code"] = _code
    return env


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def build_plan_report(
    graph: DependencyGraph,
    plan: EvaluationPlan,
    entries: List[PlanEntry],
    source_path: str,
) -> str:
    return _env().from_string(_PLAN_TEMPLATE).render(
        generated=_now(),
        source=source_path,
        version=__version__,
        entries=entries,
        levels=len(plan.levels),
        mermaid=_build_mermaid(graph, plan),
    )


def build_apply_report(
    graph: DependencyGraph,
    plan: EvaluationPlan,
    report: ApplyReport,
    source_path: str,
    ascii_mode: bool = False,
) -> str:
    counts = {o.value: len(report.by_outcome(o)) for o in Outcome}
    return _env().from_string(_APPLY_TEMPLATE).render(
        generated=_now(),
        source=source_path,
        version=__version__,
        report=report,
        counts=counts,
        icon=_OUTCOME_ASCII if ascii_mode else _OUTCOME_EMOJI,
        mermaid=_build_mermaid(graph, plan, {n.node_id: n.status for n in report.nodes}),
    )
