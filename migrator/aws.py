"""AWS collaborators.

Thin boto3 wrappers for the secret store, the RDS proxy health API and
SNS. boto3 is blocking, so every call is pushed to a worker thread with
``asyncio.to_thread``.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import boto3

logger = logging.getLogger(__name__)


class SecretsProvider:
    """Fetches JSON secrets from AWS Secrets Manager."""

    def __init__(self, region: Optional[str] = None, client: Any = None):
        self._region = region
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("secretsmanager", region_name=self._region)
        return self._client

    async def get_secret(self, secret_id: str) -> dict[str, Any]:
        """Fetch and decode a JSON secret.

        Returns:
            Parsed secret, or an empty dict if the secret has no string value
        """
        response = await asyncio.to_thread(self.client.get_secret_value, SecretId=secret_id)
        secret_string = response.get("SecretString")
        if not secret_string and response.get("SecretBinary"):
            secret_string = response["SecretBinary"].decode("utf-8")
        if not secret_string:
            logger.warning(f"Secret {secret_id} has no SecretString")
            return {}
        data: dict[str, Any] = json.loads(secret_string)
        return data


class ProxyTargetHealth:
    """Reports backend target states of an RDS proxy."""

    def __init__(self, region: Optional[str] = None, client: Any = None):
        self._region = region
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("rds", region_name=self._region)
        return self._client

    async def target_states(self, proxy_name: str) -> list[str]:
        """Return the health state of every target in the default group."""
        response = await asyncio.to_thread(
            self.client.describe_db_proxy_targets,
            DBProxyName=proxy_name,
            TargetGroupName="default",
        )
        return [
            str((target.get("TargetHealth") or {}).get("State") or "")
            for target in response.get("Targets", [])
        ]


def sns_client(region: Optional[str] = None) -> Any:
    return boto3.client("sns", region_name=region)
