import threading

import pytest

from provgraph import classifier
from provgraph.classifier import REDACTED
from provgraph.engine.evaluator import REUSED, GraphEvaluator
from provgraph.engine.retry import RetryPolicy
from provgraph.errors import CyclicDependency, MissingProvider
from provgraph.graph.dependency import DependencyGraph
from provgraph.models.deferred import join
from provgraph.models.report import Outcome, RunStatus
from provgraph.models.resource import NodeStatus
from provgraph.providers.base import (
    CREATED,
    UNCHANGED,
    ProviderAdapter,
    ProviderRegistry,
    ProviderResult,
    inputs_digest,
)
from provgraph.state import StateStore

from conftest import RecordingProvider, fatal, transient


def _evaluator(graph, registry, **kwargs):
    delays = []
    kwargs.setdefault("sleep", delays.append)
    ev = GraphEvaluator(graph, registry, **kwargs)
    ev.delays = delays
    return ev


def _registry_for(provider):
    reg = ProviderRegistry()
    reg.register_adapter(provider)
    return reg


def _abcd():
    g = DependencyGraph()
    a = g.add("a", "test:Thing", {"name": "a"})
    b = g.add("b", "test:Thing", {"name": "b", "parent": a["id"]})
    g.add("c", "test:Thing", {"name": "c", "parent": b["id"]})
    g.add("d", "test:Thing", {"name": "d"})
    return g


class GatedProvider(ProviderAdapter):
    """Adapter whose ``slow`` node holds its level open until ``fast`` has started."""

    kinds = frozenset({"test:Thing"})

    def __init__(self):
        self.events = []
        self.fast_started = threading.Event()
        self.after_started = threading.Event()
        self._lock = threading.Lock()

    def _log(self, entry):
        with self._lock:
            self.events.append(entry)

    def apply(self, kind, inputs):
        name = inputs["name"]
        self._log(f"start:{name}")
        if name == "fast":
            self.fast_started.set()
        elif name == "after":
            self.after_started.set()
        elif name == "slow":
            self.fast_started.wait(2)
            # a level-1 node must not start while this one runs
            self.after_started.wait(0.3)
        self._log(f"end:{name}")
        return ProviderResult({"id": f"{kind}/{name}"}, CREATED)


class TestOrdering:
    def test_applies_in_dependency_order(self, provider, registry):
        report = _evaluator(_abcd(), registry).run()
        assert report.status == RunStatus.COMPLETED
        assert [inputs["name"] for _, inputs in provider.calls] == ["a", "d", "b", "c"]
        assert all(n.status == Outcome.APPLIED for n in report.nodes)

    def test_consumer_sees_producer_output(self, provider, registry):
        _evaluator(_abcd(), registry).run()
        sent = {inputs["name"]: inputs for _, inputs in provider.calls}
        assert sent["b"]["parent"] == "test:Thing/a"
        assert sent["c"]["parent"] == "test:Thing/b"

    def test_policy_document_built_from_two_arns(self, provider, registry):
        g = DependencyGraph()
        key = g.add("key", "test:Thing", {"name": "key"})
        bucket = g.add("bucket", "test:Thing", {"name": "bucket"})
        g.add("policy", "test:Thing", {
            "name": "policy",
            "doc": join(key["arn"], bucket["arn"]).map(
                lambda arns: {"Statement": [{"Resource": [arns[0], arns[1], arns[1] + "/*"]}]}
            ),
        })
        report = _evaluator(g, registry).run()
        assert report.order == ["key", "bucket", "policy"]
        policy_inputs = provider.calls[-1][1]
        assert policy_inputs["doc"]["Statement"][0]["Resource"] == [
            "arn:test:test:Thing/key",
            "arn:test:test:Thing/bucket",
            "arn:test:test:Thing/bucket/*",
        ]

    def test_cycle_makes_no_provider_call(self, provider, registry):
        g = DependencyGraph()
        g.add("a", "test:Thing", {"name": g.output("b", "id")})
        g.add("b", "test:Thing", {"name": g.output("a", "id")})
        with pytest.raises(CyclicDependency):
            _evaluator(g, registry).run()
        assert provider.calls == []

    def test_missing_provider_makes_no_provider_call(self, provider, registry):
        g = DependencyGraph()
        g.add("a", "test:Thing", {"name": "a"})
        g.add("x", "gcp:Nope", {"name": "x"})
        with pytest.raises(MissingProvider) as exc:
            _evaluator(g, registry).run()
        assert exc.value.kinds == ["gcp:Nope"]
        assert provider.calls == []

    def test_parallel_workers_apply_every_node(self, provider, registry):
        g = DependencyGraph()
        roots = [g.add(f"r{i}", "test:Thing", {"name": f"r{i}"}) for i in range(6)]
        g.add("sink", "test:Thing", {"name": "sink", "all": [r["id"] for r in roots]})
        report = _evaluator(g, registry, workers=4).run()
        assert report.status == RunStatus.COMPLETED
        assert report.order[-1] == "sink"
        assert provider.calls[-1][1]["name"] == "sink"
        assert provider.creates == 7

    def test_next_level_waits_for_whole_level(self):
        provider = GatedProvider()
        g = DependencyGraph()
        g.add("slow", "test:Thing", {"name": "slow"})
        fast = g.add("fast", "test:Thing", {"name": "fast"})
        g.add("after", "test:Thing", {"name": "after", "parent": fast["id"]})
        report = _evaluator(g, _registry_for(provider), workers=2).run()

        assert report.status == RunStatus.COMPLETED
        events = provider.events
        # slow and fast overlap; after starts only once slow has ended
        assert events.index("start:fast") < events.index("end:slow")
        assert events.index("end:slow") < events.index("start:after")
        assert events.index("end:fast") < events.index("start:after")


class TestIdempotence:
    def test_second_run_creates_nothing(self, provider, registry):
        _evaluator(_abcd(), registry).run()
        assert provider.creates == 4
        report = _evaluator(_abcd(), registry).run()
        assert provider.creates == 4
        assert {n.action for n in report.nodes} == {UNCHANGED}

    def test_rerun_of_same_graph_reuses_applied_nodes(self, provider, registry):
        g = _abcd()
        _evaluator(g, registry).run()
        calls = len(provider.calls)
        report = _evaluator(g, registry).run()
        assert len(provider.calls) == calls
        assert {n.action for n in report.nodes} == {REUSED}

    def test_state_store_skips_provider_calls(self, tmp_path, provider, registry):
        path = str(tmp_path / "state.json")
        _evaluator(_abcd(), registry, state=StateStore(path)).run()
        calls = len(provider.calls)

        report = _evaluator(_abcd(), registry, state=StateStore(path)).run()
        assert len(provider.calls) == calls
        assert report.get("c").action == REUSED

    def test_state_store_detects_changed_inputs(self, tmp_path, provider, registry):
        path = str(tmp_path / "state.json")
        _evaluator(_abcd(), registry, state=StateStore(path)).run()

        g = _abcd()
        g.get("d").inputs["size"] = 2
        report = _evaluator(g, registry, state=StateStore(path)).run()
        assert report.get("d").action != REUSED
        assert report.get("a").action == REUSED

    def test_secret_outputs_never_written_to_state(self, tmp_path, provider, registry):
        path = tmp_path / "state.json"
        g = DependencyGraph()
        g.add("token", "test:Token", {"name": "token"})
        _evaluator(g, registry, state=StateStore(str(path))).run()
        text = path.read_text()
        assert "s3cr3t" not in text
        assert StateStore(str(path)).nodes["token"]["has_secrets"] is True

    def test_state_digest_never_sees_secret_inputs(self, tmp_path, provider, registry):
        path = tmp_path / "state.json"
        g = DependencyGraph()
        g.add("db", "test:Thing", {"name": "db", "password": classifier.secret("hunter2")})
        _evaluator(g, registry, state=StateStore(str(path))).run()

        assert provider.calls[0][1]["password"] == "hunter2"
        entry = StateStore(str(path)).nodes["db"]
        assert entry["digest"] == inputs_digest({"name": "db", "password": REDACTED})
        assert entry["has_secrets"] is True
        assert "hunter2" not in path.read_text()

    def test_node_with_secret_inputs_is_not_reused(self, tmp_path, provider, registry):
        path = str(tmp_path / "state.json")
        for _ in range(2):
            g = DependencyGraph()
            g.add("db", "test:Thing", {"name": "db", "password": classifier.secret("hunter2")})
            report = _evaluator(g, registry, state=StateStore(path)).run()
        assert report.get("db").action == UNCHANGED
        assert len(provider.calls) == 2


class TestSecrets:
    def _token_graph(self):
        g = DependencyGraph()
        token = g.add("token", "test:Token", {"name": "dns-token"})
        g.add("k8s-secret", "test:Thing", {
            "name": "cloudflare-api-token",
            "string_data": {"api-token": token["value"]},
        })
        g.export("tokenValue", token["value"])
        g.export("tokenId", token["id"])
        return g

    def test_adapter_secret_is_redacted_in_plan(self, registry):
        g = self._token_graph()
        entries = _evaluator(g, registry).plan_report()
        k8s = next(e for e in entries if e.node_id == "k8s-secret")
        assert k8s.rendered_inputs["string_data"] == '{"api-token": "[secret]"}'

    def test_secret_reaches_consumer_but_not_report(self, provider, registry):
        g = self._token_graph()
        report = _evaluator(g, registry).run()
        sent = provider.calls[-1][1]["string_data"]["api-token"]
        assert sent.endswith("s3cr3t")

        assert report.exports["tokenValue"] == REDACTED
        assert report.exports["tokenId"] == "test:Token/dns-token"
        assert report.get("token").rendered_outputs["value"] == REDACTED
        dumped = str(report.to_dict())
        assert sent not in dumped

    def test_outputs_of_consumer_are_tainted(self, registry):
        g = self._token_graph()
        report = _evaluator(g, registry).run()
        k8s = report.get("k8s-secret").rendered_outputs
        assert k8s["string_data"] == REDACTED
        assert k8s["id"] == REDACTED

    def test_plain_outputs_escape_taint(self, registry):
        g = DependencyGraph()
        token = g.add("token", "test:Token", {"name": "dns-token"})
        g.add("k8s-secret", "test:Thing", {"name": "s", "data": token["value"]}, plain=["id"])
        report = _evaluator(g, registry).run()
        k8s = report.get("k8s-secret").rendered_outputs
        assert k8s["id"] == "test:Thing/s"
        assert k8s["data"] == REDACTED

    def test_secret_flows_through_map(self, registry):
        g = DependencyGraph()
        token = g.add("token", "test:Token", {"name": "t"})
        header = token["value"].map(lambda v: f"Bearer {v}")
        g.add("client", "test:Thing", {"name": "client", "auth": header})
        g.export("header", header)
        report = _evaluator(g, registry).run()
        assert classifier.is_sensitive(header)
        assert header.resolve().startswith("Bearer tok-")
        assert report.exports["header"] == REDACTED

    def test_declared_sensitive_output(self, registry):
        g = DependencyGraph()
        g.add("thing", "test:Thing", {"name": "t"}, sensitive=["arn"])
        report = _evaluator(g, registry).run()
        outputs = report.get("thing").rendered_outputs
        assert outputs["arn"] == REDACTED
        assert outputs["id"] == "test:Thing/t"

    def test_custom_redaction_marker(self, registry):
        g = self._token_graph()
        report = _evaluator(g, registry, redaction_marker="***").run()
        assert report.exports["tokenValue"] == "***"


class TestFailures:
    def test_failure_skips_dependents_and_aborts(self):
        provider = RecordingProvider(failures={"b": [fatal()]})
        report = _evaluator(_abcd(), _registry_for(provider)).run()

        assert report.status == RunStatus.ABORTED
        assert report.get("a").status == Outcome.APPLIED
        assert report.get("d").status == Outcome.APPLIED
        assert report.get("b").status == Outcome.FAILED
        assert report.get("b").error == "access denied"
        assert report.get("c").status == Outcome.SKIPPED
        assert report.get("c").reason == "upstream failure: b"
        assert [i["name"] for _, i in provider.calls] == ["a", "d", "b"]

    def test_failing_transform_fails_only_its_node(self, tmp_path, provider, registry):
        path = tmp_path / "state.json"
        g = DependencyGraph()
        a = g.add("a", "test:Thing", {"name": "a"})
        b = g.add("b", "test:Thing", {"name": "b", "zone": a["arn"].get("nope")})
        g.add("c", "test:Thing", {"name": "c", "parent": b["id"]})
        g.add("d", "test:Thing", {"name": "d"})
        ev = _evaluator(g, registry, state=StateStore(str(path)))
        report = ev.run()

        assert report.status == RunStatus.ABORTED
        assert ev.status == RunStatus.ABORTED
        assert report.get("b").status == Outcome.FAILED
        assert "cannot resolve inputs" in report.get("b").error
        assert g.get("b").status == NodeStatus.FAILED
        assert report.get("c").reason == "upstream failure: b"
        assert report.get("d").status == Outcome.APPLIED
        assert [i["name"] for _, i in provider.calls] == ["a", "d"]
        assert set(StateStore(str(path)).nodes) == {"a", "d"}

    def test_unexpected_adapter_error_fails_node(self):
        provider = RecordingProvider(failures={"b": [KeyError("region")]})
        report = _evaluator(_abcd(), _registry_for(provider)).run()

        assert report.status == RunStatus.ABORTED
        b = report.get("b")
        assert b.status == Outcome.FAILED
        assert b.attempts == 1
        assert b.error.startswith("KeyError")
        assert report.get("c").status == Outcome.SKIPPED
        assert report.get("a").status == Outcome.APPLIED

    def test_independent_later_nodes_are_not_started(self):
        provider = RecordingProvider(failures={"a": [fatal()]})
        g = DependencyGraph()
        a = g.add("a", "test:Thing", {"name": "a"})
        g.add("b", "test:Thing", {"name": "b", "parent": a["id"]})
        root = g.add("root", "test:Thing", {"name": "root"})
        g.add("late", "test:Thing", {"name": "late", "parent": root["id"]})
        report = _evaluator(g, _registry_for(provider)).run()

        assert report.get("root").status == Outcome.SKIPPED
        assert report.get("root").reason == "run aborted"
        assert report.get("late").status == Outcome.SKIPPED
        assert report.get("b").reason == "upstream failure: a"

    def test_retryable_error_backs_off(self):
        provider = RecordingProvider(failures={"a": [transient(), transient()]})
        ev = _evaluator(_abcd(), _registry_for(provider), retry=RetryPolicy(max_attempts=3))
        report = ev.run()
        assert report.status == RunStatus.COMPLETED
        assert report.get("a").attempts == 3
        assert report.get("a").action == CREATED
        assert ev.delays == [0.5, 1.0]

    def test_retries_are_bounded(self):
        provider = RecordingProvider(failures={"a": [transient()] * 5})
        ev = _evaluator(_abcd(), _registry_for(provider), retry=RetryPolicy(max_attempts=3))
        report = ev.run()
        a = report.get("a")
        assert a.status == Outcome.FAILED
        assert a.attempts == 3
        assert "gave up after 3 attempts" in a.error
        assert ev.delays == [0.5, 1.0]

    def test_non_retryable_error_is_not_retried(self):
        provider = RecordingProvider(failures={"a": [fatal()]})
        ev = _evaluator(_abcd(), _registry_for(provider))
        report = ev.run()
        assert report.get("a").attempts == 1
        assert ev.delays == []

    def test_resume_after_fix(self):
        provider = RecordingProvider(failures={"b": [fatal()]})
        registry = _registry_for(provider)
        g = _abcd()
        first = _evaluator(g, registry).run()
        assert first.status == RunStatus.ABORTED
        assert g.get("b").status == NodeStatus.FAILED

        second = _evaluator(g, registry).run()
        assert second.status == RunStatus.COMPLETED
        assert second.get("a").action == REUSED
        assert second.get("b").action == CREATED
        assert second.get("c").action == CREATED
        assert provider.creates == 4

    def test_missing_referenced_output_fails_node(self):
        class Forgetful(RecordingProvider):
            def apply(self, kind, inputs):
                result = super().apply(kind, inputs)
                result.outputs.pop("arn", None)
                return ProviderResult(result.outputs, result.action)

        provider = Forgetful()
        g = DependencyGraph()
        a = g.add("a", "test:Thing", {"name": "a"})
        g.add("b", "test:Thing", {"name": "b", "parent": a["arn"]})
        report = _evaluator(g, _registry_for(provider)).run()
        assert report.get("a").status == Outcome.FAILED
        assert "arn" in report.get("a").error
        assert report.get("b").status == Outcome.SKIPPED

    def test_parallel_failure_keeps_finished_nodes(self):
        provider = RecordingProvider(failures={"r2": [fatal()]})
        g = DependencyGraph()
        roots = [g.add(f"r{i}", "test:Thing", {"name": f"r{i}"}) for i in range(4)]
        g.add("sink", "test:Thing", {"name": "sink", "all": [r["id"] for r in roots]})
        report = _evaluator(g, _registry_for(provider), workers=4).run()
        assert report.status == RunStatus.ABORTED
        assert report.get("r2").status == Outcome.FAILED
        assert report.get("sink").status == Outcome.SKIPPED
        assert report.get("sink").reason == "upstream failure: r2"
        for node in report.nodes:
            assert node.status in (Outcome.APPLIED, Outcome.FAILED, Outcome.SKIPPED)


class TestPlanReport:
    def test_plan_renders_unknown_values(self, provider, registry):
        entries = _evaluator(_abcd(), registry).plan_report()
        by_id = {e.node_id: e for e in entries}
        assert by_id["b"].rendered_inputs["parent"] == "(known after apply)"
        assert by_id["b"].level == 1
        assert by_id["c"].depends_on == ["b"]
        assert provider.calls == []
