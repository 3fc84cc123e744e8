import os
import threading

import pytest

from provgraph.errors import ProviderError
from provgraph.providers.base import (
    CREATED,
    UNCHANGED,
    ProviderAdapter,
    ProviderRegistry,
    ProviderResult,
)

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


class RecordingProvider(ProviderAdapter):
    """
    Test adapter keeping its "remote" objects in a dict.

    ``failures`` maps an input name to a list of errors raised, one per call,
    before the call goes through.
    """

    kinds = frozenset({"test:Thing", "test:Token"})

    def __init__(self, failures=None):
        self.remote = {}
        self.calls = []
        self.creates = 0
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self._lock = threading.Lock()

    def sensitive_outputs(self, kind):
        return frozenset({"value"}) if kind == "test:Token" else frozenset()

    def apply(self, kind, inputs):
        with self._lock:
            self.calls.append((kind, inputs))
            queue = self.failures.get(inputs.get("name"))
            if queue:
                raise queue.pop(0)
            key = self.identity_key(kind, inputs)
            if key in self.remote:
                return ProviderResult(dict(self.remote[key]), UNCHANGED)
            outputs = dict(inputs)
            outputs["id"] = key
            outputs["arn"] = f"arn:test:{key}"
            if kind == "test:Token":
                outputs["value"] = f"tok-{len(self.remote)}-s3cr3t"
            self.remote[key] = outputs
            self.creates += 1
            return ProviderResult(dict(outputs), CREATED)


def transient(message="throttled"):
    return ProviderError(message, retryable=True)


def fatal(message="access denied"):
    return ProviderError(message, retryable=False)


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def registry(provider):
    reg = ProviderRegistry()
    reg.register_adapter(provider)
    return reg
