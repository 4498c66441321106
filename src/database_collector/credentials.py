"""Credential sources - discover database instances and their connection secrets."""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from aws_secretsmanager_caching import SecretCache, SecretCacheConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import CredentialFetchError, CredentialSchemaError, UnsupportedEngineError

logger = logging.getLogger(__name__)

DEFAULT_TAG_KEY = "database-collector:enabled"
DEFAULT_TAG_VALUE = "true"
DEFAULT_CACHE_TTL = 3600


class EngineKind(str, Enum):
    """Supported database engines."""
    MYSQL = "mysql"
    POSTGRES = "postgres"
    ORACLE = "oracle"

    @classmethod
    def parse(cls, value: str) -> "EngineKind":
        """Map an engine name (including RDS engine names) to an EngineKind."""
        normalized = (value or "").strip().lower()
        kind = _ENGINE_ALIASES.get(normalized)
        if kind is None:
            raise UnsupportedEngineError(value)
        return kind


_ENGINE_ALIASES = {
    "mysql": EngineKind.MYSQL,
    "mariadb": EngineKind.MYSQL,
    "aurora-mysql": EngineKind.MYSQL,
    "postgres": EngineKind.POSTGRES,
    "postgresql": EngineKind.POSTGRES,
    "aurora-postgresql": EngineKind.POSTGRES,
    "oracle": EngineKind.ORACLE,
    "oracle-ee": EngineKind.ORACLE,
    "oracle-se2": EngineKind.ORACLE,
    "oracle-se1": EngineKind.ORACLE,
    "oracle-se": EngineKind.ORACLE,
}


@dataclass(frozen=True)
class ConnectionParams:
    """Connection parameters for one database instance."""

    host: str
    port: int
    username: str
    password: str = field(repr=False)
    dbname: str = ""


@dataclass(frozen=True)
class CredentialRecord:
    """A validated credential for one database instance."""

    id: str
    engine: str  # raw engine name as stored in the secret
    connection: ConnectionParams

    @property
    def identifier(self) -> str:
        """Short instance identifier: the first DNS label of the host."""
        return self.connection.host.split(".")[0]


@dataclass(frozen=True)
class CredentialRef:
    """A credential listed by a source, before its value is fetched."""

    id: str
    tags: dict[str, str] = field(default_factory=dict, hash=False)


class SecretPayload(BaseModel):
    """Schema of a database credential secret."""

    model_config = {"extra": "ignore"}

    engine: str = Field(..., min_length=1, description="Engine name, e.g. postgres or aurora-mysql")
    host: str = Field(..., min_length=1)
    port: int = Field(..., gt=0, lt=65536)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, repr=False)
    dbname: str = Field("", description="Database (or Oracle service) name")

    @field_validator("port", mode="before")
    @classmethod
    def port_not_bool(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("port must be a number")
        return value

    @field_validator("dbname", mode="before")
    @classmethod
    def dbname_default(cls, value: Any) -> Any:
        return "" if value is None else value


def _describe_errors(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'secret'}: {err['msg']}" for err in error.errors()
    )


def parse_credential(credential_id: str, payload: str | bytes | dict[str, Any]) -> CredentialRecord:
    """Validate a secret payload and build a CredentialRecord.

    Args:
        credential_id: Identifier of the secret in the credential store
        payload: JSON string or already-decoded mapping

    Returns:
        Validated CredentialRecord

    Raises:
        CredentialSchemaError: If the payload is not a JSON object or does
            not match SecretPayload
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise CredentialSchemaError(f"Secret is not valid JSON: {e}", credential_id) from e

    try:
        secret = SecretPayload.model_validate(payload)
    except ValidationError as e:
        raise CredentialSchemaError(f"Invalid secret: {_describe_errors(e)}", credential_id) from e

    return CredentialRecord(
        id=credential_id,
        engine=secret.engine,
        connection=ConnectionParams(
            host=secret.host,
            port=secret.port,
            username=secret.username,
            password=secret.password,
            dbname=secret.dbname,
        ),
    )


class CredentialSource(ABC):
    """
    Abstract credential store.

    Implementations list the credentials tagged for collection and fetch
    their secret values.
    """

    @abstractmethod
    def list_credentials(self) -> list[CredentialRef]:
        """List credentials eligible for collection."""

    @abstractmethod
    def fetch_credential(self, credential_id: str) -> CredentialRecord:
        """Fetch and validate the value of one credential."""

    def snapshot(self) -> list[CredentialRecord]:
        """
        List and fetch every eligible credential.

        A credential that cannot be fetched or fails validation is logged and
        left out of the snapshot. A failure to list at all is raised.
        """
        records = []
        for ref in self.list_credentials():
            try:
                records.append(self.fetch_credential(ref.id))
            except CredentialFetchError as e:
                logger.warning(f"Skipping credential {ref.id}: {e}")
        return records


class SecretsManagerSource(CredentialSource):
    """
    Discover database credentials stored in AWS Secrets Manager.

    Secrets are eligible when they carry the tag ``tag_key`` with the value
    ``tag_value`` (default ``database-collector:enabled=true``). The secret
    string must be a JSON object with ``engine, host, port, username,
    password`` and optionally ``dbname``.
    """

    def __init__(
        self,
        region: Optional[str] = None,
        tag_key: str = DEFAULT_TAG_KEY,
        tag_value: str = DEFAULT_TAG_VALUE,
        client: Any = None,
        page_size: int = 100,
        cache_ttl: int = DEFAULT_CACHE_TTL,
        cache: Optional[SecretCache] = None,
    ):
        self.region = region
        self.tag_key = tag_key
        self.tag_value = tag_value
        self.page_size = page_size
        self.cache_ttl = cache_ttl
        self._client = client
        self._cache = cache

    @property
    def client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("secretsmanager", region_name=self.region)
        return self._client

    @property
    def cache(self) -> SecretCache:
        if self._cache is None:
            config = SecretCacheConfig(secret_refresh_interval=self.cache_ttl)
            self._cache = SecretCache(config=config, client=self.client)
        return self._cache

    def list_credentials(self) -> list[CredentialRef]:
        refs = []
        try:
            paginator = self.client.get_paginator("list_secrets")
            pages = paginator.paginate(
                Filters=[{"Key": "tag-key", "Values": [self.tag_key]}],
                PaginationConfig={"PageSize": self.page_size},
            )
            for page in pages:
                for secret in page.get("SecretList", []):
                    tags = {t["Key"]: t.get("Value", "") for t in secret.get("Tags", [])}
                    if tags.get(self.tag_key, "").lower() != self.tag_value.lower():
                        logger.debug(f"Secret {secret['Name']} not enabled for collection")
                        continue
                    refs.append(CredentialRef(id=secret["Name"], tags=tags))
        except (BotoCoreError, ClientError) as e:
            raise CredentialFetchError(f"Failed to list secrets: {e}") from e

        logger.info(f"Found {len(refs)} secrets tagged {self.tag_key}={self.tag_value}")
        return refs

    def fetch_credential(self, credential_id: str) -> CredentialRecord:
        """
        Fetch a secret through the local cache.

        Values are refreshed after ``cache_ttl`` seconds. If a refresh fails
        the last value fetched successfully is returned instead.
        """
        try:
            secret_string = self.cache.get_secret_string(credential_id)
        except (BotoCoreError, ClientError) as e:
            raise CredentialFetchError(f"Failed to fetch secret: {e}", credential_id) from e

        if secret_string is None:
            raise CredentialSchemaError("Secret has no string value", credential_id)
        return parse_credential(credential_id, secret_string)


class StaticCredentialSource(CredentialSource):
    """Credentials supplied directly, e.g. from the ``databases`` config section."""

    def __init__(self, payloads: dict[str, dict[str, Any]] | None = None):
        self._payloads = dict(payloads or {})

    @classmethod
    def from_records(cls, records: Iterable[CredentialRecord]) -> "StaticCredentialSource":
        payloads = {}
        for record in records:
            payloads[record.id] = {
                "engine": record.engine,
                "host": record.connection.host,
                "port": record.connection.port,
                "username": record.connection.username,
                "password": record.connection.password,
                "dbname": record.connection.dbname,
            }
        return cls(payloads)

    def set(self, credential_id: str, payload: dict[str, Any]):
        self._payloads[credential_id] = payload

    def remove(self, credential_id: str):
        self._payloads.pop(credential_id, None)

    def list_credentials(self) -> list[CredentialRef]:
        return [CredentialRef(id=credential_id) for credential_id in sorted(self._payloads)]

    def fetch_credential(self, credential_id: str) -> CredentialRecord:
        if credential_id not in self._payloads:
            raise CredentialFetchError("Unknown credential", credential_id)
        return parse_credential(credential_id, self._payloads[credential_id])
