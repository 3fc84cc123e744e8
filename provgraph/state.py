"""
Persistent record of applied nodes.

Only non-sensitive outputs are written. A node that produced secrets is
re-applied on the next run; its adapter is idempotent and hands back the
existing object's outputs without creating anything.
"""
import json
import logging
import os
import threading
from typing import Any, Dict, Iterable, Optional

from provgraph.errors import StateError

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateStore:
    def __init__(self, path: Optional[str] = None):
        self.path = path
        self.nodes: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        if path and os.path.exists(path):
            self.load()

    def load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise StateError(f"cannot read state file {self.path}: {exc}") from exc
        if not isinstance(data, dict) or data.get("version") != STATE_VERSION:
            raise StateError(f"{self.path}: unsupported state file version")
        self.nodes = data.get("nodes", {})
        logger.debug("loaded state for %d node(s) from %s", len(self.nodes), self.path)

    def save(self) -> None:
        if not self.path:
            return
        with self._lock:
            payload = {"version": STATE_VERSION, "nodes": self.nodes}
            try:
                os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
                with open(self.path, "w", encoding="utf-8", newline="\n") as fh:
                    json.dump(payload, fh, indent=2, sort_keys=True)
            except OSError as exc:
                raise StateError(f"cannot write state file {self.path}: {exc}") from exc

    def record(
        self,
        node_id: str,
        kind: str,
        key: str,
        digest: str,
        outputs: Dict[str, Any],
        sensitive: Iterable[str],
        secret_inputs: bool = False,
    ) -> None:
        """
        Store ``outputs`` minus the ``sensitive`` keys.

        ``digest`` is taken over redacted inputs, so a node fed secret
        inputs is flagged like one that produced secrets and never reused.
        """
        secret_keys = set(sensitive)
        with self._lock:
            self.nodes[node_id] = {
                "kind": kind,
                "key": key,
                "digest": digest,
                "outputs": {k: v for k, v in outputs.items() if k not in secret_keys},
                "has_secrets": secret_inputs or bool(secret_keys & set(outputs)),
            }

    def forget(self, node_id: str) -> None:
        with self._lock:
            self.nodes.pop(node_id, None)

    def reusable(self, node_id: str, key: str, digest: str) -> Optional[Dict[str, Any]]:
        """Recorded outputs of ``node_id`` if they can stand in for an apply."""
        with self._lock:
            entry = self.nodes.get(node_id)
        if not entry or entry.get("has_secrets"):
            return None
        if entry.get("key") != key or entry.get("digest") != digest:
            return None
        return dict(entry.get("outputs", {}))

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes
