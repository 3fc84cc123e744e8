from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class RunStatus(str, Enum):
    PLANNING  = "PLANNING"
    APPLYING  = "APPLYING"
    COMPLETED = "COMPLETED"
    ABORTED   = "ABORTED"


class Outcome(str, Enum):
    APPLIED = "APPLIED"
    FAILED  = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class PlanEntry:
    node_id: str
    kind: str
    level: int
    depends_on: List[str] = field(default_factory=list)
    rendered_inputs: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "kind": self.kind,
            "level": self.level,
            "depends_on": self.depends_on,
            "rendered_inputs": self.rendered_inputs,
        }


@dataclass
class NodeReport:
    node_id: str
    kind: str
    status: Outcome
    action: Optional[str] = None       # created / updated / unchanged / read / reused
    attempts: int = 0
    error: Optional[str] = None
    reason: Optional[str] = None       # why a node was skipped
    rendered_outputs: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "kind": self.kind,
            "status": self.status.value,
            "action": self.action,
            "attempts": self.attempts,
            "error": self.error,
            "reason": self.reason,
            "rendered_outputs": self.rendered_outputs,
        }


@dataclass
class ApplyReport:
    status: RunStatus
    nodes: List[NodeReport] = field(default_factory=list)
    exports: Dict[str, str] = field(default_factory=dict)

    def get(self, node_id: str) -> Optional[NodeReport]:
        return next((n for n in self.nodes if n.node_id == node_id), None)

    def by_outcome(self, outcome: Outcome) -> List[NodeReport]:
        return [n for n in self.nodes if n.status == outcome]

    @property
    def order(self) -> List[str]:
        return [n.node_id for n in self.nodes]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "nodes": [n.to_dict() for n in self.nodes],
            "exports": self.exports,
        }
