"""Deployment lifecycle adapter.

Entry point invoked by the deployment orchestrator (a CloudFormation /
CDK custom resource) on Create, Update and Delete. Create and Update
apply pending migrations; Delete does nothing because migrations are
never reversed on stack teardown.

Usage (AWS Lambda):
    handler: migrator.handler.handler
"""

import asyncio
import logging
import os
import time
import traceback
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .alarms import AlarmPayload, AlarmPublisher, build_alarm_publisher
from .aws import ProxyTargetHealth, SecretsProvider
from .base import ConfigurationError, MigrationFile
from .catalog import discover_migrations
from .config import MigratorConfig, get_config
from .connection import Connection, Connector, ProxyHealth, open_connection
from .resolver import SecretSource, resolve_database_config
from .runner import MigrationRunner

logger = logging.getLogger(__name__)

DEFAULT_PHYSICAL_ID = "namecard-schema-migrator"
REQUEST_TYPES = {"create": "Create", "update": "Update", "delete": "Delete"}
PAUSE_VALUES = {"true", "paused", "1", "yes"}
EXECUTION_ID_VARS = ("CODEBUILD_BUILD_ID", "CODEPIPELINE_EXECUTION_ID", "GITHUB_RUN_ID")


class ResourceProperties(BaseModel):
    """Properties passed through the custom resource."""

    model_config = ConfigDict(extra="allow")

    version: Optional[str] = None
    pause: Any = None
    paused: Any = None

    @field_validator("version", mode="before")
    @classmethod
    def _string_version(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) and value else None


class LifecycleEvent(BaseModel):
    """Custom resource lifecycle event."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    request_type: str = Field(alias="RequestType")
    physical_resource_id: Optional[str] = Field(default=None, alias="PhysicalResourceId")
    resource_properties: ResourceProperties = Field(
        default_factory=ResourceProperties, alias="ResourceProperties"
    )

    @field_validator("request_type")
    @classmethod
    def _normalize_request_type(cls, value: str) -> str:
        normalized = REQUEST_TYPES.get(value.strip().lower())
        if normalized is None:
            raise ValueError(f"Unsupported RequestType: {value}")
        return normalized

    @field_validator("resource_properties", mode="before")
    @classmethod
    def _default_properties(cls, value: Any) -> Any:
        return value if value is not None else {}


def parse_event(event: Mapping[str, Any]) -> LifecycleEvent:
    """Validate a raw lifecycle event.

    Raises:
        ConfigurationError: If the event is malformed
    """
    try:
        return LifecycleEvent.model_validate(dict(event))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid lifecycle event: {e}") from e


def _is_pause_value(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in PAUSE_VALUES


def resolve_pause(event: LifecycleEvent, config: MigratorConfig) -> bool:
    """Combine the per-event pause flag with the process-wide one."""
    props = event.resource_properties
    return _is_pause_value(props.pause) or _is_pause_value(props.paused) or config.paused


def build_batch_id(version: Optional[str], env: Optional[Mapping[str, str]] = None) -> str:
    """Pick the batch identifier recorded on every ledger row of this run."""
    env = os.environ if env is None else env
    explicit = env.get("MIGRATION_BATCH_ID")
    if explicit:
        return explicit

    for var in EXECUTION_ID_VARS:
        execution_id = env.get(var)
        if execution_id:
            return f"{version or 'pipeline'}-{execution_id}"

    return f"{version or 'manual'}-{int(time.time() * 1000)}"


class MigrationHandler:
    """Runs migrations in response to lifecycle events.

    All external collaborators are injected; defaults are the AWS-backed
    implementations built from configuration.
    """

    def __init__(
        self,
        config: Optional[MigratorConfig] = None,
        secrets: Optional[SecretSource] = None,
        health: Optional[ProxyHealth] = None,
        alarms: Optional[AlarmPublisher] = None,
        connector: Optional[Connector] = None,
        discover: Callable[[str], list[MigrationFile]] = discover_migrations,
        env: Optional[Mapping[str, str]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config or get_config()
        self.secrets = secrets or SecretsProvider(self.config.region)
        self.health = health or ProxyTargetHealth(self.config.region)
        self.alarms = alarms
        self.connector = connector
        self.discover = discover
        self.env = os.environ if env is None else env
        self.sleep = sleep

    async def handle(self, raw_event: Mapping[str, Any]) -> dict[str, Any]:
        """Handle one lifecycle event.

        Returns:
            Custom resource response with PhysicalResourceId and Data

        Raises:
            Exception: Any migration failure, after an alarm was attempted
        """
        event = parse_event(raw_event)
        physical_id = event.physical_resource_id or DEFAULT_PHYSICAL_ID

        if event.request_type == "Delete":
            logger.info("Delete request received; migrations are not reversed")
            return {"PhysicalResourceId": physical_id}

        if resolve_pause(event, self.config):
            logger.warning("Schema migrations paused by configuration")
            return {"PhysicalResourceId": physical_id, "Data": {"status": "paused"}}

        version = event.resource_properties.version
        batch_id = build_batch_id(version, self.env)

        for problem in self.config.validate():
            logger.warning(f"Configuration: {problem}")

        conn: Optional[Connection] = None

        try:
            migrations = self.discover(self.config.migrations_dir)
            logger.info(f"Discovered {len(migrations)} migration file(s) for batch {batch_id}")

            resolved = await resolve_database_config(self.config.database, self.secrets)
            conn = await open_connection(
                resolved, self.config, self.health, self.connector, self.sleep
            )

            runner = MigrationRunner(
                conn,
                ledger_table=self.config.ledger.table,
                lock_key=self.config.ledger.lock_key,
                version_tag=version,
                batch_id=batch_id,
            )
            result = await runner.apply(migrations)
        except Exception as e:
            logger.error(f"Schema migration failed: {e}")
            await self._publish_alarm(e, version, batch_id)
            raise
        finally:
            if conn is not None:
                try:
                    await conn.close()
                except Exception as close_error:
                    logger.error(f"Failed to close database connection: {close_error}")

        return {
            "PhysicalResourceId": physical_id,
            "Data": {
                "status": "completed",
                "applied": len(result.applied),
                "skipped": len(result.skipped),
            },
        }

    async def _publish_alarm(
        self, error: BaseException, version: Optional[str], batch_id: str
    ) -> None:
        if self.alarms is None:
            return
        payload = AlarmPayload(
            message=str(error),
            stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            version=version,
            batch_id=batch_id,
        )
        try:
            await self.alarms.publish(payload)
        except Exception as alarm_error:
            logger.error(f"Failed to publish migration alarm: {alarm_error}")


def handler(event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
    """AWS Lambda entry point."""
    logging.basicConfig(level=logging.INFO)
    config = get_config()
    migration_handler = MigrationHandler(
        config=config,
        alarms=build_alarm_publisher(config.alarms, config.region),
    )
    return asyncio.run(migration_handler.handle(event))
