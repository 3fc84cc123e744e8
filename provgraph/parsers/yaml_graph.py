"""
YAML (and JSON) graph definitions.

    config:
      prefix: moonrepo
    secrets:
      db_password: hunter2
    resources:
      - id: state-key
        kind: aws:kms:Key
        inputs:
          description: KMS key for state bucket encryption
      - id: deployer-policy
        kind: aws:iam:Policy
        inputs:
          name: ${config.prefix}-deployer
          policy:
            Resource: ["${state-key.arn}"]
        sensitive: []
    exports:
      keyArn: ${state-key.arn}
      accessKeySecret: {value: "${deployer-key.secret}", secret: true}
"""
import json
from typing import Any, Dict, List, Optional

import yaml

from provgraph.errors import DefinitionError, DuplicateNode
from provgraph.graph.dependency import DependencyGraph
from provgraph.parsers.references import ReferenceResolver


def _as_list(val: Any, what: str, filepath: str) -> List[str]:
    if val is None:
        return []
    if isinstance(val, str):
        return [val]
    if isinstance(val, list) and all(isinstance(v, str) for v in val):
        return list(val)
    raise DefinitionError(f"'{what}' must be a list of output names", filepath)


def _read(filepath: str) -> Dict[str, Any]:
    try:
        with open(filepath, "r", encoding="utf-8") as fh:
            if filepath.lower().endswith(".json"):
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise DefinitionError(f"cannot parse: {exc}", filepath) from exc
    if not isinstance(data, dict):
        raise DefinitionError("document must be a mapping", filepath)
    return data


def load_document(
    data: Dict[str, Any],
    graph: Optional[DependencyGraph] = None,
    filepath: str = "",
) -> DependencyGraph:
    graph = graph if graph is not None else DependencyGraph()

    resources = data.get("resources") or []
    if not isinstance(resources, list):
        raise DefinitionError("'resources' must be a list", filepath)

    resolver = ReferenceResolver(
        graph,
        config=data.get("config") or {},
        secrets=data.get("secrets") or {},
        source_file=filepath,
    )

    # declare every id first so references may point forward
    for idx, entry in enumerate(resources):
        if not isinstance(entry, dict) or not entry.get("id") or not entry.get("kind"):
            raise DefinitionError(f"resource #{idx + 1} needs an 'id' and a 'kind'", filepath)
        resolver.declare(str(entry["id"]), str(entry["kind"]))

    for entry in resources:
        inputs = entry.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise DefinitionError(f"{entry['id']}: 'inputs' must be a mapping", filepath)
        try:
            graph.add(
                str(entry["id"]),
                str(entry["kind"]),
                inputs=resolver.convert(inputs),
                sensitive=_as_list(entry.get("sensitive"), "sensitive", filepath),
                plain=_as_list(entry.get("plain"), "plain", filepath),
                source_file=filepath,
            )
        except DuplicateNode as exc:
            raise DefinitionError(str(exc), filepath) from exc

    exports = data.get("exports") or {}
    if not isinstance(exports, dict):
        raise DefinitionError("'exports' must be a mapping", filepath)
    for name, body in exports.items():
        if isinstance(body, dict) and "value" in body:
            graph.export(name, resolver.convert(body["value"]), secret=bool(body.get("secret", False)))
        else:
            graph.export(name, resolver.convert(body))

    return graph


def parse_file(filepath: str, graph: Optional[DependencyGraph] = None) -> DependencyGraph:
    return load_document(_read(filepath), graph, filepath)
