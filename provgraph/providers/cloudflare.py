"""
Cloudflare kinds: zone lookup and scoped API tokens (cert-manager DNS-01).
"""
import hashlib
import secrets
from typing import Any, Dict

from provgraph.providers.base import KindProfile


def _zone(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    zone_id = hashlib.sha1(inputs["name"].encode("utf-8")).hexdigest()[:32]
    return {"zone_id": zone_id, "id": zone_id, "status": "active"}


def _api_token(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": hashlib.sha1(key.encode("utf-8")).hexdigest()[:32],
        "value": secrets.token_urlsafe(30),
        "status": "active",
    }


PROFILES = [
    KindProfile("cloudflare:Zone", generate=_zone, required=("name",),
                lookup=True, aliases=("cloudflare_zone",)),
    KindProfile("cloudflare:ApiToken", generate=_api_token, required=("name", "policies"),
                sensitive=frozenset({"value"}), plain=frozenset({"id", "status"}),
                aliases=("cloudflare_api_token",)),
]
