"""Cloud-native secret resolution.

Tenant credential columns (client secrets, ManageBac API tokens) and the
database URL may hold secret references instead of plaintext. References are
resolved from AWS Secrets Manager or GCP Secret Manager; anything else is
returned unchanged.
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from typing import Optional

logger = logging.getLogger("school_sync.secrets")

_AWS_PREFIX = "aws-secret://"
_GCP_PREFIX = "gcp-secret://"


def is_secret_ref(value: Optional[str]) -> bool:
    return bool(value) and value.startswith((_AWS_PREFIX, _GCP_PREFIX))


def resolve_secret(value: Optional[str]) -> Optional[str]:
    """Resolve a secret reference to its plaintext value.

    Supported formats:
      - "aws-secret://secret-name"         -> AWS Secrets Manager
      - "aws-secret://secret-name#key"     -> AWS Secrets Manager (JSON key)
      - "gcp-secret://project/secret/ver"  -> GCP Secret Manager
      - anything else (including None)     -> returned as-is
    """
    if not is_secret_ref(value):
        return value
    # Many tenants share one secret; fetch each reference once per process.
    return _resolve_cached(value)


@lru_cache(maxsize=256)
def _resolve_cached(ref: str) -> str:
    if ref.startswith(_AWS_PREFIX):
        return _resolve_aws_secret(ref[len(_AWS_PREFIX):])
    return _resolve_gcp_secret(ref[len(_GCP_PREFIX):])


def _resolve_aws_secret(ref: str) -> str:
    """ref format: "secret-name" or "secret-name#json_key"."""
    import boto3

    secret_name, _, json_key = ref.partition("#")
    region = os.environ.get("AWS_REGION", "us-east-1")
    client = boto3.client("secretsmanager", region_name=region)
    secret_string = client.get_secret_value(SecretId=secret_name)["SecretString"]
    logger.debug("Resolved AWS secret %s", secret_name)

    if json_key:
        return str(json.loads(secret_string)[json_key])
    return secret_string


def _resolve_gcp_secret(ref: str) -> str:
    """ref format: "projects/P/secrets/NAME/versions/V" or bare "NAME" (latest)."""
    from google.cloud import secretmanager

    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID", "")
        if not project:
            raise RuntimeError(
                f"Cannot resolve gcp-secret://{ref}: set GCP_PROJECT_ID or use a full resource name"
            )
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    client = secretmanager.SecretManagerServiceClient()
    response = client.access_secret_version(request={"name": name})
    return response.payload.data.decode("UTF-8")


def resolve_database_url() -> str:
    """Resolve DATABASE_URL from env, falling back to PG_* variables."""
    url = os.environ.get("DATABASE_URL", "")
    if url:
        return resolve_secret(url)

    host = os.environ.get("PG_HOST", "localhost")
    port = os.environ.get("PG_PORT", "5432")
    user = os.environ.get("PG_USER", "schoolsync")
    password = resolve_secret(os.environ.get("PG_PASSWORD", "localdev-change-me"))
    database = os.environ.get("PG_DATABASE", "school_sync")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"
