"""
Turns ``${...}`` expressions inside definition strings into deferred values.

Supported forms:

- ``${node.output}`` and ``${node.output.nested.key}``
- ``${kind.node.output}`` (Terraform spelling; matches a node id of
  ``kind.node`` first, then a node ``node`` of that kind)
- ``${config.name}`` / ``${var.name}`` for plain configuration
- ``${secrets.name}`` for secret configuration

A string that is exactly one reference becomes that value; references
embedded in a longer string become a ``concat``.
"""
import re
from typing import Any, Dict, Optional

from provgraph import classifier
from provgraph.errors import DefinitionError
from provgraph.graph.dependency import DependencyGraph
from provgraph.models.deferred import DeferredValue, concat

_REF_RE = re.compile(r"\$\{\s*([^}]+?)\s*\}")

_CONFIG_ROOTS = ("config", "var")
_SECRET_ROOTS = ("secrets", "secret")


class ReferenceResolver:
    def __init__(
        self,
        graph: DependencyGraph,
        config: Optional[Dict[str, Any]] = None,
        secrets: Optional[Dict[str, Any]] = None,
        source_file: str = "",
    ):
        self.graph = graph
        self.config = dict(config or {})
        self.source_file = source_file
        self._secret_values: Dict[str, DeferredValue] = {
            name: classifier.secret(value) for name, value in (secrets or {}).items()
        }
        self.kinds: Dict[str, str] = {node.id: node.kind for node in graph}

    def declare(self, node_id: str, kind: str) -> None:
        self.kinds[node_id] = kind

    def secret(self, name: str) -> DeferredValue:
        try:
            return self._secret_values[name]
        except KeyError:
            raise DefinitionError(f"unknown secret '{name}'", self.source_file) from None

    def lookup(self, expr: str) -> Any:
        parts = [p for p in expr.split(".") if p]
        if len(parts) == 2 and parts[0] in _CONFIG_ROOTS:
            if parts[1] in self.config:
                return self.config[parts[1]]
            # sensitive Terraform variables are still spelled var.name
            if parts[1] in self._secret_values:
                return self._secret_values[parts[1]]
            raise DefinitionError(f"unknown config value '{parts[1]}'", self.source_file)
        if len(parts) == 2 and parts[0] in _SECRET_ROOTS:
            return self.secret(parts[1])

        if len(parts) >= 3 and f"{parts[0]}.{parts[1]}" in self.kinds:
            # HCL resources are keyed kind.name
            parts = [f"{parts[0]}.{parts[1]}"] + parts[2:]
        elif len(parts) >= 3 and self.kinds.get(parts[1]) == parts[0]:
            # kind.node.output -> node.output
            parts = parts[1:]
        if len(parts) < 2:
            raise DefinitionError(f"reference '${{{expr}}}' must name a node and an output", self.source_file)
        node_id, key, rest = parts[0], parts[1], parts[2:]
        if node_id not in self.kinds:
            raise DefinitionError(f"reference '${{{expr}}}' names unknown node '{node_id}'", self.source_file)

        value = self.graph.output(node_id, key)
        for item in rest:
            value = value.get(int(item) if item.isdigit() else item)
        return value

    def convert(self, value: Any) -> Any:
        """Recursively replace reference expressions in ``value``."""
        if isinstance(value, dict):
            return {k: self.convert(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.convert(v) for v in value]
        if not isinstance(value, str):
            return value

        matches = list(_REF_RE.finditer(value))
        if not matches:
            return value
        if len(matches) == 1 and matches[0].span() == (0, len(value)):
            return self.lookup(matches[0].group(1))

        parts = []
        pos = 0
        for m in matches:
            if m.start() > pos:
                parts.append(value[pos:m.start()])
            parts.append(self.lookup(m.group(1)))
            pos = m.end()
        if pos < len(value):
            parts.append(value[pos:])
        if not any(isinstance(p, DeferredValue) for p in parts):
            return "".join(str(p) for p in parts)
        return concat(*parts)
