"""Destination types, their config models, and destination-key derivation.

Each destination type has a frozen config model.  Configs accept both the
camelCase keys used by workflow code (``keyTemplate``, ``channelId``) and
their snake_case field names.  ``identity()`` returns the stable subset of
the config that names the logical target; two configs with equal identity
share a destination key and therefore a batch.
"""

from __future__ import annotations

from enum import Enum
from string import Formatter
from typing import Any, ClassVar, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from sinkrelay.core.errors import UnknownDestinationError, ValidationError
from sinkrelay.core.hasher import identity_digest


# Placeholders an object key template may use
KEY_TEMPLATE_FIELDS: frozenset[str] = frozenset(
    {"batch_id", "date", "timestamp", "execution_id", "uuid"}
)

# Every flush must land on its own object; at least one of these is required.
UNIQUE_KEY_FIELDS: frozenset[str] = frozenset({"batch_id", "uuid"})


class DestinationType(str, Enum):
    """Recognized sink kinds."""

    HTTP = "http"
    OBJECT_STORAGE = "object-storage"
    EMAIL = "email"
    PUSH_CHANNEL = "push-channel"
    RE_EMIT = "re-emit"
    TABULAR = "tabular"


class DestinationConfig(BaseModel):
    """Base for per-type destination configs."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    destination_type: ClassVar[DestinationType]

    def identity(self) -> dict[str, Any]:
        """Return the fields that identify the logical target."""
        raise NotImplementedError

    def destination_key(self) -> str:
        return identity_digest(self.destination_type.value, self.identity())


class HttpConfig(DestinationConfig):
    destination_type: ClassVar[DestinationType] = DestinationType.HTTP

    method: str = "POST"
    url: str
    headers: dict[str, str] = {}
    timeout_ms: int | None = Field(default=None, alias="timeoutMs", gt=0)

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        method = value.strip().upper()
        if method not in {"GET", "POST", "PUT", "PATCH", "DELETE"}:
            raise ValueError(f"unsupported HTTP method {value!r}")
        return method

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value

    def identity(self) -> dict[str, Any]:
        return {"method": self.method, "url": self.url}


class ObjectStorageConfig(DestinationConfig):
    destination_type: ClassVar[DestinationType] = DestinationType.OBJECT_STORAGE

    bucket: str = Field(min_length=1)
    key_template: str = Field(alias="keyTemplate", min_length=1)
    format: Literal["json", "jsonl"] = "jsonl"

    @field_validator("key_template")
    @classmethod
    def _check_placeholders(cls, value: str) -> str:
        try:
            fields = {name for _, name, _, _ in Formatter().parse(value) if name is not None}
        except ValueError as exc:
            raise ValueError(f"malformed keyTemplate: {exc}") from exc
        unknown = fields - KEY_TEMPLATE_FIELDS
        if unknown:
            raise ValueError(
                f"unknown keyTemplate placeholder(s) {sorted(unknown)}; "
                f"allowed: {sorted(KEY_TEMPLATE_FIELDS)}"
            )
        if not fields & UNIQUE_KEY_FIELDS:
            raise ValueError(
                "keyTemplate must contain {batch_id} or {uuid} so that each batch "
                "is written to its own object"
            )
        return value

    @property
    def key_prefix(self) -> str:
        """Static part of the key template, up to the first placeholder."""
        return self.key_template.split("{", 1)[0]

    def identity(self) -> dict[str, Any]:
        return {"bucket": self.bucket, "prefix": self.key_prefix, "format": self.format}


class EmailConfig(DestinationConfig):
    destination_type: ClassVar[DestinationType] = DestinationType.EMAIL

    to: list[str]
    subject: str = Field(min_length=1)
    template: str | None = None

    @field_validator("to", mode="before")
    @classmethod
    def _split_recipients(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("to")
    @classmethod
    def _check_recipients(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one recipient is required")
        for address in value:
            if "@" not in address:
                raise ValueError(f"invalid email address {address!r}")
        return value

    def identity(self) -> dict[str, Any]:
        return {"to": sorted(self.to), "subject": self.subject}


class PushChannelConfig(DestinationConfig):
    destination_type: ClassVar[DestinationType] = DestinationType.PUSH_CHANNEL

    channel_id: str = Field(alias="channelId", min_length=1)
    event_name: str = Field(alias="eventName", min_length=1)

    def identity(self) -> dict[str, Any]:
        return {"channel_id": self.channel_id, "event_name": self.event_name}


class ReEmitConfig(DestinationConfig):
    destination_type: ClassVar[DestinationType] = DestinationType.RE_EMIT

    target_execution_id: str | None = Field(default=None, alias="targetExecutionId")
    target_listener_id: str | None = Field(default=None, alias="targetListenerId")

    @model_validator(mode="after")
    def _exactly_one_target(self) -> ReEmitConfig:
        if bool(self.target_execution_id) == bool(self.target_listener_id):
            raise ValueError(
                "exactly one of targetExecutionId or targetListenerId is required"
            )
        return self

    @property
    def target(self) -> str:
        return self.target_execution_id or self.target_listener_id or ""

    def identity(self) -> dict[str, Any]:
        if self.target_execution_id:
            return {"execution": self.target_execution_id}
        return {"listener": self.target_listener_id}


class TabularConfig(DestinationConfig):
    destination_type: ClassVar[DestinationType] = DestinationType.TABULAR

    database: str = Field(pattern=r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")
    table: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")

    def identity(self) -> dict[str, Any]:
        return {"database": self.database, "table": self.table}


# Registry for config parsing by destination type
CONFIG_TYPE_MAP: dict[DestinationType, type[DestinationConfig]] = {
    DestinationType.HTTP: HttpConfig,
    DestinationType.OBJECT_STORAGE: ObjectStorageConfig,
    DestinationType.EMAIL: EmailConfig,
    DestinationType.PUSH_CHANNEL: PushChannelConfig,
    DestinationType.RE_EMIT: ReEmitConfig,
    DestinationType.TABULAR: TabularConfig,
}


def parse_destination_type(value: str | DestinationType) -> DestinationType:
    """Return the ``DestinationType`` for *value* or raise ``UnknownDestinationError``."""
    if isinstance(value, DestinationType):
        return value
    try:
        return DestinationType(value)
    except ValueError as exc:
        known = ", ".join(t.value for t in DestinationType)
        raise UnknownDestinationError(
            f"Unknown destination type {value!r} (known: {known})"
        ) from exc


def parse_destination_config(
    destination_type: str | DestinationType, config: dict[str, Any] | DestinationConfig
) -> DestinationConfig:
    """Validate a raw config dict against the model for its destination type.

    Raises
    ------
    ValidationError
        If the config is missing required fields or has invalid values.
    """
    dtype = parse_destination_type(destination_type)
    model_cls = CONFIG_TYPE_MAP[dtype]
    if isinstance(config, model_cls):
        return config
    if isinstance(config, DestinationConfig):
        raise ValidationError(
            f"{type(config).__name__} cannot configure a {dtype.value} destination"
        )
    if not isinstance(config, dict):
        raise ValidationError(
            f"Destination config must be an object, got {type(config).__name__}"
        )
    try:
        return model_cls.model_validate(config)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(
            f"Invalid {dtype.value} destination config: {problems}"
        ) from exc


_ConfigT = TypeVar("_ConfigT", bound=DestinationConfig)


def load_destination_config(model_cls: type[_ConfigT], config: dict[str, Any]) -> _ConfigT:
    """Validate *config* for the destination type served by *model_cls*.

    Sinks call this on the raw config carried by a batch.  A batch whose
    config does not produce a ``model_cls`` instance raises ``ValidationError``,
    which the worker treats as a permanent failure.
    """
    parsed = parse_destination_config(model_cls.destination_type, config)
    if not isinstance(parsed, model_cls):
        raise ValidationError(
            f"{model_cls.destination_type.value} sink received a "
            f"{type(parsed).__name__}, expected {model_cls.__name__}"
        )
    return parsed
