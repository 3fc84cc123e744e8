"""
In-memory catalog adapter.

``MemoryBackend`` stands in for a remote API: it stores one record per
identity key and counts calls per action, so re-runs can be checked for
idempotence. It can be persisted to a JSON file between CLI invocations.
"""
import json
import logging
import os
import threading
from collections import Counter
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from provgraph.errors import ProviderError
from provgraph.providers import aws, cloudflare, kubernetes
from provgraph.providers.base import (
    CREATED,
    READ,
    UNCHANGED,
    UPDATED,
    KindProfile,
    ProviderAdapter,
    ProviderRegistry,
    ProviderResult,
    dig,
    inputs_digest,
)

logger = logging.getLogger(__name__)


class MemoryBackend:
    def __init__(self, path: Optional[str] = None):
        self.path = path
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: Counter = Counter()
        self._lock = threading.Lock()
        if path and os.path.exists(path):
            self.load()

    def load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise ProviderError(f"cannot read backend file {self.path}: {exc}") from exc
        self.records = data.get("records", {})

    def save(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        with self._lock:
            payload = {"records": self.records}
        with open(self.path, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.records.get(key)

    def put(self, key: str, kind: str, inputs: Dict[str, Any], outputs: Dict[str, Any]) -> None:
        with self._lock:
            self.records[key] = {
                "kind": kind,
                "digest": inputs_digest(inputs),
                "outputs": outputs,
            }

    def record_call(self, action: str, kind: str) -> None:
        with self._lock:
            self.calls[(action, kind)] += 1

    def count(self, action: str, kind: Optional[str] = None) -> int:
        with self._lock:
            return sum(n for (a, k), n in self.calls.items() if a == action and (kind is None or k == kind))


class MemoryProvider(ProviderAdapter):
    """Serves every kind described by a list of KindProfile entries."""

    def __init__(self, profiles: Iterable[KindProfile], backend: Optional[MemoryBackend] = None):
        self.profiles: Dict[str, KindProfile] = {p.kind: p for p in profiles}
        self.backend = backend or MemoryBackend()
        self.kinds = frozenset(self.profiles)

    def _profile(self, kind: str) -> KindProfile:
        try:
            return self.profiles[kind]
        except KeyError:
            raise ProviderError(f"kind '{kind}' is not served by this adapter") from None

    def identity_key(self, kind: str, inputs: Dict[str, Any]) -> str:
        profile = self.profiles.get(kind)
        if profile and profile.identity:
            parts = [dig(inputs, path) for path in profile.identity]
            if all(p is not None for p in parts):
                return f"{kind}/" + "/".join(str(p) for p in parts)
        return super().identity_key(kind, inputs)

    def sensitive_outputs(self, kind: str) -> FrozenSet[str]:
        return self._profile(kind).sensitive

    def plain_outputs(self, kind: str) -> FrozenSet[str]:
        return self._profile(kind).plain

    def apply(self, kind: str, inputs: Dict[str, Any]) -> ProviderResult:
        profile = self._profile(kind)
        missing = [path for path in profile.required if dig(inputs, path) is None]
        if missing:
            raise ProviderError(f"{kind}: missing required input(s): {', '.join(missing)}")

        key = self.identity_key(kind, inputs)
        generate = profile.generate or (lambda _key, _inputs: {})

        if profile.lookup:
            self.backend.record_call(READ, kind)
            return ProviderResult(outputs={**inputs, **generate(key, inputs)}, action=READ)

        existing = self.backend.get(key)
        if existing is not None and existing["digest"] == inputs_digest(inputs):
            self.backend.record_call(UNCHANGED, kind)
            logger.debug("%s already exists, no change", key)
            return ProviderResult(outputs=dict(existing["outputs"]), action=UNCHANGED)

        generated = generate(key, inputs)
        if existing is not None:
            # generated secrets survive an in-place update
            for name in profile.sensitive:
                if name in existing["outputs"] and name in generated:
                    generated[name] = existing["outputs"][name]
        outputs = {**inputs, **generated}
        action = UPDATED if existing is not None else CREATED
        self.backend.put(key, kind, inputs, outputs)
        self.backend.record_call(action, kind)
        logger.debug("%s %s", key, action)
        return ProviderResult(outputs=outputs, action=action)

    def register_into(self, registry: ProviderRegistry) -> None:
        for profile in self.profiles.values():
            registry.register(profile.kind, self, aliases=profile.aliases)


def builtin_profiles() -> List[KindProfile]:
    return [*aws.PROFILES, *cloudflare.PROFILES, *kubernetes.PROFILES]


def builtin_registry(backend: Optional[MemoryBackend] = None) -> ProviderRegistry:
    """Registry serving every built-in kind from one in-memory backend."""
    registry = ProviderRegistry()
    MemoryProvider(builtin_profiles(), backend).register_into(registry)
    return registry
