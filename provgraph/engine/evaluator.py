"""
Graph evaluator: applies nodes level by level in dependency order.

Nodes of one topological level are independent and may run concurrently;
level k+1 only starts once every node of level k is APPLIED or FAILED.
After a failure the nodes already in flight finish, nothing new starts, and
the remaining nodes are reported as skipped.
"""
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Set, Tuple

from provgraph import classifier
from provgraph.config import Settings
from provgraph.engine.retry import RetryPolicy
from provgraph.errors import GraphError, ProviderError, UnresolvedDependency, UpstreamSkipped
from provgraph.graph.dependency import DependencyGraph, EvaluationPlan
from provgraph.models.deferred import resolve_deep
from provgraph.models.report import ApplyReport, NodeReport, Outcome, PlanEntry, RunStatus
from provgraph.models.resource import NodeStatus, ResourceNode
from provgraph.providers.base import ProviderRegistry, ProviderResult, inputs_digest
from provgraph.state import StateStore

logger = logging.getLogger(__name__)

REUSED = "reused"


class GraphEvaluator:
    def __init__(
        self,
        graph: DependencyGraph,
        registry: ProviderRegistry,
        state: Optional[StateStore] = None,
        workers: int = 1,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        redaction_marker: str = classifier.REDACTED,
    ):
        self.graph = graph
        self.registry = registry
        self.state = state
        self.workers = max(1, workers)
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self.marker = redaction_marker
        self.status = RunStatus.PLANNING
        self._referenced: Set[Tuple[str, str]] = set()

    @classmethod
    def from_settings(
        cls,
        graph: DependencyGraph,
        registry: ProviderRegistry,
        settings: Settings,
        state: Optional[StateStore] = None,
    ) -> "GraphEvaluator":
        return cls(
            graph,
            registry,
            state=state,
            workers=settings.workers,
            retry=RetryPolicy(settings.max_attempts, settings.backoff_base, settings.backoff_max),
            redaction_marker=settings.redaction_marker,
        )

    # ------------------------------------------------------------ planning
    def plan(self) -> EvaluationPlan:
        """Validate the graph and provider coverage. Makes no provider call."""
        self.status = RunStatus.PLANNING
        plan = self.graph.build()
        self.registry.require(node.kind for node in self.graph)
        # classify adapter-level secrets up front so plans already redact them
        for node in self.graph:
            kind = self.registry.canonical_kind(node.kind)
            for key in self.registry.get(kind).sensitive_outputs(kind):
                self.graph.mark_sensitive(node.id, key)
        self._referenced = self.graph.referenced_outputs()
        return plan

    def plan_report(self, plan: Optional[EvaluationPlan] = None) -> List[PlanEntry]:
        if plan is None:
            plan = self.plan()
        entries = []
        for nid in plan.order:
            node = self.graph.get(nid)
            entries.append(PlanEntry(
                node_id=nid,
                kind=node.kind,
                level=plan.level_of(nid),
                depends_on=list(plan.depends_on.get(nid, [])),
                rendered_inputs={k: classifier.render(v, self.marker) for k, v in node.inputs.items()},
            ))
        return entries

    # ------------------------------------------------------------ applying
    def run(self) -> ApplyReport:
        plan = self.plan()
        self.status = RunStatus.APPLYING
        logger.info("applying %d node(s) in %d level(s)", len(plan), len(plan.levels))

        reports: Dict[str, NodeReport] = {}
        # failed node ids each skipped/failed node traces back to
        causes: Dict[str, Set[str]] = {}
        aborted = False

        try:
            for level in plan.levels:
                runnable: List[ResourceNode] = []
                for nid in level:
                    node = self.graph.get(nid)
                    upstream: Set[str] = set()
                    for producer in plan.depends_on.get(nid, []):
                        upstream |= causes.get(producer, set())
                    if upstream:
                        causes[nid] = upstream
                        reports[nid] = self._skipped(node, "upstream failure: " + ", ".join(sorted(upstream)))
                    elif aborted:
                        reports[nid] = self._skipped(node, "run aborted")
                    else:
                        runnable.append(node)

                for report in self._run_level(runnable):
                    reports[report.node_id] = report
                    if report.status == Outcome.FAILED:
                        causes[report.node_id] = {report.node_id}
                        aborted = True
        finally:
            if self.state is not None:
                self.state.save()

        self.status = RunStatus.ABORTED if aborted else RunStatus.COMPLETED
        logger.info("run %s", self.status.value.lower())
        return ApplyReport(
            status=self.status,
            nodes=[reports[nid] for nid in plan.order],
            exports={name: classifier.render(v, self.marker) for name, v in self.graph.exports.items()},
        )

    def _run_level(self, nodes: List[ResourceNode]) -> List[NodeReport]:
        if self.workers == 1 or len(nodes) <= 1:
            reports = []
            failed = False
            for node in nodes:
                if failed:
                    reports.append(self._skipped(node, "run aborted"))
                    continue
                report = self._apply_node(node)
                failed = report.status == Outcome.FAILED
                reports.append(report)
            return reports

        results: Dict[str, NodeReport] = {}
        with ThreadPoolExecutor(max_workers=min(self.workers, len(nodes))) as pool:
            futures: Dict[Future, ResourceNode] = {pool.submit(self._apply_node, n): n for n in nodes}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    report = fut.result()
                    results[report.node_id] = report
                    if report.status == Outcome.FAILED:
                        # queued nodes never start; running ones are left to finish
                        for other in pending:
                            if other.cancel():
                                node = futures[other]
                                results[node.id] = self._skipped(node, "run aborted")
                        pending = {f for f in pending if not f.cancelled()}
        return [results[n.id] for n in nodes]

    def _skipped(self, node: ResourceNode, reason: str) -> NodeReport:
        skip = UpstreamSkipped(node.id, reason)
        logger.warning("%s", skip)
        return NodeReport(node_id=node.id, kind=node.kind, status=Outcome.SKIPPED, reason=skip.reason)

    def _apply_node(self, node: ResourceNode) -> NodeReport:
        kind = self.registry.canonical_kind(node.kind)
        adapter = self.registry.get(kind)

        was_applied = node.status == NodeStatus.APPLIED
        # every producer is APPLIED by now; resolving cannot block
        node.status = NodeStatus.RESOLVING
        try:
            inputs = resolve_deep(node.inputs)
            key = adapter.identity_key(kind, inputs)
        except UnresolvedDependency:
            raise
        except Exception as exc:
            # a failing transform fails this node only
            return self._failed(node, f"cannot resolve inputs: {type(exc).__name__}: {exc}", 0)
        # state digests never see secret input values
        secret_inputs = classifier.any_sensitive(node.references())
        digest = inputs_digest(classifier.render_deep(node.inputs))

        if was_applied:
            # applied by an earlier run over this same graph
            if node.idempotency_key != key:
                raise GraphError(f"node '{node.id}' changed after it was applied; build a new graph")
            node.status = NodeStatus.APPLIED
            logger.info("%s: already applied", node.id)
            return self._applied(node, REUSED, 0)

        recorded = self.state.reusable(node.id, key, digest) if self.state is not None else None
        needed = [k for k in node.outputs if (node.id, k) in self._referenced]
        if recorded is not None and all(k in recorded for k in needed):
            result, attempts = ProviderResult(outputs=recorded, action=REUSED), 0
        else:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("%s: %s %s", node.id, kind, classifier.render(node.inputs, self.marker))
            try:
                result, attempts = self.retry.call(
                    lambda: adapter.apply(kind, inputs), label=node.id, sleep=self.sleep
                )
            except ProviderError as exc:
                return self._failed(node, str(exc), exc.attempts)
            except UnresolvedDependency:
                raise
            except Exception as exc:
                logger.debug("%s: adapter error", node.id, exc_info=True)
                return self._failed(node, f"{type(exc).__name__}: {exc}", 1)

        missing = sorted(k for k in needed if k not in result.outputs)
        if missing:
            return self._failed(node, f"provider returned no value for output(s): {', '.join(missing)}", attempts)

        secret_keys = set(node.sensitive) | set(adapter.sensitive_outputs(kind))
        plain_keys = set(node.plain) | set(adapter.plain_outputs(kind))
        marked = set()
        for name in result.outputs:
            if name in secret_keys or (secret_inputs and name not in plain_keys):
                self.graph.ledger.mark(node.output(name))
                marked.add(name)
            elif self.graph.ledger.is_marked(node.output(name)):
                marked.add(name)
        for name, value in result.outputs.items():
            node.output(name).fulfil(value)

        node.idempotency_key = key
        node.status = NodeStatus.APPLIED
        if self.state is not None:
            self.state.record(node.id, kind, key, digest, result.outputs, marked, secret_inputs=secret_inputs)
        logger.info("%s: %s", node.id, result.action)
        return self._applied(node, result.action, attempts)

    def _applied(self, node: ResourceNode, action: str, attempts: int) -> NodeReport:
        return NodeReport(
            node_id=node.id,
            kind=node.kind,
            status=Outcome.APPLIED,
            action=action,
            attempts=attempts,
            rendered_outputs={
                k: classifier.render(dv, self.marker)
                for k, dv in sorted(node.outputs.items())
                if dv.is_resolved
            },
        )

    def _failed(self, node: ResourceNode, message: str, attempts: int) -> NodeReport:
        node.status = NodeStatus.FAILED
        logger.error("%s: %s", node.id, message)
        return NodeReport(
            node_id=node.id,
            kind=node.kind,
            status=Outcome.FAILED,
            attempts=attempts,
            error=message,
        )
