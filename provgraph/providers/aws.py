"""
AWS kinds served by the in-memory catalog adapter: the KMS key, state bucket,
deployer user/policy/access-key set and Secrets Manager entries.
"""
import hashlib
import secrets
from typing import Any, Dict

from provgraph.providers.base import KindProfile

ACCOUNT_ID = "123456789012"
DEFAULT_REGION = "eu-west-2"


def _hex(key: str, n: int) -> str:
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:n]


def _region(inputs: Dict[str, Any]) -> str:
    return inputs.get("region") or DEFAULT_REGION


def _kms_key(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    h = _hex(key, 32)
    key_id = f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"
    return {
        "key_id": key_id,
        "arn": f"arn:aws:kms:{_region(inputs)}:{ACCOUNT_ID}:key/{key_id}",
    }


def _kms_alias(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {"arn": f"arn:aws:kms:{_region(inputs)}:{ACCOUNT_ID}:{inputs['name']}"}


def _bucket(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    name = inputs["bucket"]
    return {
        "id": name,
        "arn": f"arn:aws:s3:::{name}",
        "bucket_domain_name": f"{name}.s3.amazonaws.com",
    }


def _bucket_setting(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": inputs["bucket"]}


def _iam_user(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "arn": f"arn:aws:iam::{ACCOUNT_ID}:user/{inputs['name']}",
        "unique_id": "AIDA" + _hex(key, 17).upper(),
    }


def _iam_policy(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "arn": f"arn:aws:iam::{ACCOUNT_ID}:policy/{inputs['name']}",
        "policy_id": "ANPA" + _hex(key, 17).upper(),
    }


def _attachment(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": f"{inputs['user']}-{_hex(key, 8)}"}


def _access_key(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": "AKIA" + _hex(key, 16).upper(),
        "secret": secrets.token_urlsafe(30),
        "status": "Active",
    }


def _secret_entry(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    suffix = _hex(key, 6)
    return {"arn": f"arn:aws:secretsmanager:{_region(inputs)}:{ACCOUNT_ID}:secret:{inputs['name']}-{suffix}"}


def _caller_identity(key: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "account_id": ACCOUNT_ID,
        "arn": f"arn:aws:iam::{ACCOUNT_ID}:user/provgraph",
    }


PROFILES = [
    KindProfile("aws:kms:Key", identity=("description",), generate=_kms_key,
                required=("description",), aliases=("aws_kms_key",)),
    KindProfile("aws:kms:Alias", generate=_kms_alias,
                required=("name", "target_key_id"), aliases=("aws_kms_alias",)),
    KindProfile("aws:s3:Bucket", identity=("bucket",), generate=_bucket,
                required=("bucket",), aliases=("aws_s3_bucket",)),
    KindProfile("aws:s3:BucketPublicAccessBlock", identity=("bucket",), generate=_bucket_setting,
                required=("bucket",), aliases=("aws_s3_bucket_public_access_block",)),
    KindProfile("aws:s3:BucketVersioning", identity=("bucket",), generate=_bucket_setting,
                required=("bucket",), aliases=("aws_s3_bucket_versioning",)),
    KindProfile("aws:s3:BucketEncryption", identity=("bucket",), generate=_bucket_setting,
                required=("bucket",),
                aliases=("aws_s3_bucket_server_side_encryption_configuration",)),
    KindProfile("aws:s3:BucketLifecycle", identity=("bucket",), generate=_bucket_setting,
                required=("bucket",), aliases=("aws_s3_bucket_lifecycle_configuration",)),
    KindProfile("aws:iam:User", generate=_iam_user, required=("name",), aliases=("aws_iam_user",)),
    KindProfile("aws:iam:Policy", generate=_iam_policy,
                required=("name", "policy"), aliases=("aws_iam_policy",)),
    KindProfile("aws:iam:UserPolicyAttachment", identity=("user", "policy_arn"), generate=_attachment,
                required=("user", "policy_arn"), aliases=("aws_iam_user_policy_attachment",)),
    KindProfile("aws:iam:AccessKey", identity=("user",), generate=_access_key,
                required=("user",), sensitive=frozenset({"secret"}),
                plain=frozenset({"id", "status"}), aliases=("aws_iam_access_key",)),
    KindProfile("aws:secretsmanager:Secret", generate=_secret_entry,
                required=("name",), sensitive=frozenset({"secret_string"}),
                plain=frozenset({"arn", "name"}), aliases=("aws_secretsmanager_secret",)),
    KindProfile("aws:sts:CallerIdentity", identity=(), generate=_caller_identity,
                lookup=True, aliases=("aws_caller_identity",)),
]
