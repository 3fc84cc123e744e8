from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Set

from provgraph.models.deferred import DeferredValue, find_deferred


class NodeStatus(str, Enum):
    PENDING   = "PENDING"
    RESOLVING = "RESOLVING"
    APPLIED   = "APPLIED"
    FAILED    = "FAILED"


@dataclass
class ResourceNode:
    id: str
    kind: str                       # e.g. "aws:s3:Bucket", "cloudflare:ApiToken"
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, DeferredValue] = field(default_factory=dict)
    sensitive: Set[str] = field(default_factory=set)   # output keys that are secrets
    plain: Set[str] = field(default_factory=set)       # output keys exempt from input taint
    source_file: str = ""
    status: NodeStatus = NodeStatus.PENDING
    idempotency_key: str = ""

    def output(self, key: str) -> DeferredValue:
        """Return the (single) deferred value for output ``key``."""
        dv = self.outputs.get(key)
        if dv is None:
            dv = DeferredValue.output(self.id, key)
            self.outputs[key] = dv
        return dv

    def references(self) -> List[DeferredValue]:
        return find_deferred(self.inputs)

    def depends_on(self) -> Set[str]:
        deps: Set[str] = set()
        for dv in self.references():
            deps |= dv.producers()
        return deps

    @property
    def applied(self) -> bool:
        return self.status == NodeStatus.APPLIED

    def __getitem__(self, key: str) -> DeferredValue:
        return self.output(key)
