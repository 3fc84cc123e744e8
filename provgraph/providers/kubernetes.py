"""
Kubernetes kinds: namespaced Secret objects.
"""
from typing import Any, Dict

from provgraph.providers.base import KindProfile


def _secret(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    meta = inputs["metadata"]
    ref = f"{meta['namespace']}/{meta['name']}"
    return {"id": ref, "ref": ref, "type": inputs.get("type", "Opaque")}


PROFILES = [
    KindProfile("kubernetes:core/v1:Secret", identity=("metadata.namespace", "metadata.name"),
                generate=_secret, required=("metadata.namespace", "metadata.name"),
                plain=frozenset({"id", "ref", "type", "metadata"}),
                aliases=("kubernetes_secret", "kubernetes_secret_v1")),
]
