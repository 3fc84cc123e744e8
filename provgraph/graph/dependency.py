"""
Dependency graph over resource nodes.

Edges are never declared by the caller: they are derived by scanning each
node's inputs for deferred values that point into another node's outputs.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import networkx as nx

from provgraph import classifier
from provgraph.errors import CyclicDependency, DuplicateNode, UnknownReference
from provgraph.models.deferred import DeferredValue, find_deferred
from provgraph.models.resource import ResourceNode

logger = logging.getLogger(__name__)


@dataclass
class EvaluationPlan:
    order: List[str]
    levels: List[List[str]]
    depends_on: Dict[str, List[str]] = field(default_factory=dict)

    def level_of(self, node_id: str) -> int:
        for depth, ids in enumerate(self.levels):
            if node_id in ids:
                return depth
        raise KeyError(node_id)

    def __iter__(self) -> Iterator[str]:
        return iter(self.order)

    def __len__(self) -> int:
        return len(self.order)


class DependencyGraph:
    def __init__(self):
        self.ledger = classifier.ledger
        self.exports: Dict[str, Any] = {}
        self._nodes: Dict[str, ResourceNode] = {}
        self._forward: Dict[Tuple[str, str], DeferredValue] = {}

    # ------------------------------------------------------------ declaration
    def add(
        self,
        node_id: str,
        kind: str,
        inputs: Optional[Dict[str, Any]] = None,
        sensitive: Iterable[str] = (),
        plain: Iterable[str] = (),
        source_file: str = "",
    ) -> ResourceNode:
        if node_id in self._nodes:
            raise DuplicateNode(node_id)
        node = ResourceNode(
            id=node_id,
            kind=kind,
            inputs=dict(inputs or {}),
            plain=set(plain),
            source_file=source_file,
        )
        # adopt references taken before the node was declared
        for (owner, key), dv in list(self._forward.items()):
            if owner == node_id:
                node.outputs[key] = dv
                del self._forward[(owner, key)]
        self._nodes[node_id] = node
        for key in sensitive:
            self.mark_sensitive(node_id, key)
        return node

    def output(self, node_id: str, key: str) -> DeferredValue:
        """Reference an output, even of a node that is declared later."""
        node = self._nodes.get(node_id)
        if node is not None:
            return node.output(key)
        dv = self._forward.get((node_id, key))
        if dv is None:
            dv = DeferredValue.output(node_id, key)
            self._forward[(node_id, key)] = dv
        return dv

    def mark_sensitive(self, node_id: str, key: str) -> DeferredValue:
        node = self._nodes[node_id]
        node.sensitive.add(key)
        return self.ledger.mark(node.output(key))

    def export(self, name: str, value: Any, secret: bool = False) -> None:
        if secret:
            value = classifier.secret(value)
        self.exports[name] = value

    # ------------------------------------------------------------ access
    def get(self, node_id: str) -> ResourceNode:
        return self._nodes[node_id]

    @property
    def nodes(self) -> List[ResourceNode]:
        return list(self._nodes.values())

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    # ------------------------------------------------------------ analysis
    def edges(self) -> Set[Tuple[str, str]]:
        """Derive (producer, consumer) pairs from node inputs."""
        result: Set[Tuple[str, str]] = set()
        for node in self._nodes.values():
            for producer in node.depends_on():
                if producer not in self._nodes:
                    raise UnknownReference(node.id, producer)
                result.add((producer, node.id))
        for name, value in self.exports.items():
            for dv in find_deferred(value):
                for producer in dv.producers():
                    if producer not in self._nodes:
                        raise UnknownReference(f"export:{name}", producer)
        return result

    def to_networkx(self) -> "nx.DiGraph":
        """Directed graph with an edge from each producer to its consumers."""
        dag = nx.DiGraph()
        dag.add_nodes_from(self._nodes)
        dag.add_edges_from(self.edges())
        return dag

    def find_cycle(self, dag: "nx.DiGraph") -> Optional[List[str]]:
        """Return one cycle as a closed path of node ids, or None."""
        try:
            cycle = nx.find_cycle(dag)
        except nx.NetworkXNoCycle:
            return None
        return [producer for producer, _ in cycle] + [cycle[0][0]]

    def build(self) -> EvaluationPlan:
        """
        Validate the graph and compute the evaluation plan.

        Raises CyclicDependency (including self-references) or
        UnknownReference. No provider is touched.
        """
        dag = self.to_networkx()
        cycle = self.find_cycle(dag)
        if cycle:
            raise CyclicDependency(cycle)

        index = {nid: i for i, nid in enumerate(self._nodes)}
        levels = [sorted(gen, key=index.__getitem__) for gen in nx.topological_generations(dag)]
        # the evaluator runs level by level, so the order follows the levels
        order = [nid for level in levels for nid in level]
        depends_on = {nid: sorted(dag.predecessors(nid), key=index.__getitem__) for nid in self._nodes}

        logger.debug("plan: %d node(s), %d edge(s), %d level(s)", len(order), dag.number_of_edges(), len(levels))
        return EvaluationPlan(order=order, levels=levels, depends_on=depends_on)

    def referenced_outputs(self) -> Set[Tuple[str, str]]:
        """(node_id, key) of every output some input or export depends on."""
        values = [dv for node in self._nodes.values() for dv in node.references()]
        values += find_deferred(list(self.exports.values()))
        return {(dv.node_id, dv.key) for v in values for dv in v.lineage() if dv.is_output}

    def dependents(self, node_id: str) -> Set[str]:
        """Every node that transitively consumes an output of ``node_id``."""
        return set(nx.descendants(self.to_networkx(), node_id))
