"""
HCL graph definitions, written the way Terraform configurations are:

    variable "prefix" { default = "moonrepo" }

    resource "aws_kms_key" "state_key" {
      description = "KMS key for ${var.prefix} state"
    }

    resource "aws_iam_access_key" "deployer_key" {
      user = aws_iam_user.deployer.name
    }

    output "secret_access_key" {
      value     = aws_iam_access_key.deployer_key.secret
      sensitive = true
    }

The node id is ``<type>.<name>``, as Terraform addresses resources, so
``aws_s3_bucket.state`` and ``aws_s3_bucket_versioning.state`` can coexist.
``sensitive_outputs`` and ``plain_outputs`` attributes are taken out of the
inputs and classify outputs. Variables marked ``sensitive = true`` become secrets.
"""
from typing import Any, Dict, Iterator, List, Optional, Tuple

import hcl2

from provgraph.errors import DefinitionError, DuplicateNode
from provgraph.graph.dependency import DependencyGraph
from provgraph.parsers.references import ReferenceResolver

_META_ATTRS = ("sensitive_outputs", "plain_outputs")


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items()}
    return val


def _labelled(blocks: Any) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Yield (label, body) for one-label blocks such as variable/output."""
    for block in blocks or []:
        if not isinstance(block, dict):
            continue
        for label, body in block.items():
            body = _unwrap(body)
            yield label, body if isinstance(body, dict) else {}


def _resources(blocks: Any) -> Iterator[Tuple[str, str, Dict[str, Any]]]:
    """Yield (kind, name, body) for two-label resource blocks."""
    for block in blocks or []:
        if not isinstance(block, dict):
            continue
        for kind, instances in block.items():
            # hcl2 may or may not wrap the instances map in a list
            maps = instances if isinstance(instances, list) else [instances]
            for instance_map in maps:
                if not isinstance(instance_map, dict):
                    continue
                for name, raw_props in instance_map.items():
                    props = _unwrap(raw_props) if isinstance(raw_props, (dict, list)) else {}
                    yield kind, name, props if isinstance(props, dict) else {}


def _names(val: Any, attr: str, filepath: str) -> List[str]:
    if val is None:
        return []
    if isinstance(val, str):
        return [val]
    if isinstance(val, list) and all(isinstance(v, str) for v in val):
        return list(val)
    raise DefinitionError(f"'{attr}' must be a list of output names", filepath)


def parse_file(filepath: str, graph: Optional[DependencyGraph] = None) -> DependencyGraph:
    try:
        with open(filepath, "r", encoding="utf-8") as fh:
            data = hcl2.load(fh)
    except Exception as exc:  # python-hcl2 raises lark errors of several types
        raise DefinitionError(f"cannot parse: {exc}", filepath) from exc

    graph = graph if graph is not None else DependencyGraph()

    config: Dict[str, Any] = {}
    secrets: Dict[str, Any] = {}
    for name, body in _labelled(data.get("variable")):
        target = secrets if body.get("sensitive") else config
        target[name] = body.get("default")

    resolver = ReferenceResolver(graph, config=config, secrets=secrets, source_file=filepath)
    resources = list(_resources(data.get("resource")))
    for kind, name, _ in resources:
        resolver.declare(f"{kind}.{name}", kind)

    for kind, name, props in resources:
        meta = {attr: props.pop(attr, None) for attr in _META_ATTRS}
        try:
            graph.add(
                f"{kind}.{name}",
                kind,
                inputs=resolver.convert(props),
                sensitive=_names(meta["sensitive_outputs"], "sensitive_outputs", filepath),
                plain=_names(meta["plain_outputs"], "plain_outputs", filepath),
                source_file=filepath,
            )
        except DuplicateNode as exc:
            raise DefinitionError(str(exc), filepath) from exc

    for name, body in _labelled(data.get("output")):
        if "value" not in body:
            raise DefinitionError(f"output '{name}' has no value", filepath)
        graph.export(name, resolver.convert(body["value"]), secret=bool(body.get("sensitive", False)))

    return graph
