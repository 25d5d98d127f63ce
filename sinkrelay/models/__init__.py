"""sinkrelay data models — Pydantic v2; records, configs and attempts are frozen."""

from sinkrelay.models.batches import (
    DEFAULT_POLICIES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    AttemptOutcome,
    Batch,
    BatchingPolicy,
    BatchState,
    DeliveryAttempt,
    DeliveryMode,
    DeliveryResult,
    PolicyOverrides,
    ReadyReason,
)
from sinkrelay.models.destinations import (
    CONFIG_TYPE_MAP,
    DestinationConfig,
    DestinationType,
    EmailConfig,
    HttpConfig,
    ObjectStorageConfig,
    PushChannelConfig,
    ReEmitConfig,
    TabularConfig,
    parse_destination_config,
    parse_destination_type,
)
from sinkrelay.models.records import EventRecord

__all__ = [
    # records
    "EventRecord",
    # destinations
    "DestinationType",
    "DestinationConfig",
    "HttpConfig",
    "ObjectStorageConfig",
    "EmailConfig",
    "PushChannelConfig",
    "ReEmitConfig",
    "TabularConfig",
    "CONFIG_TYPE_MAP",
    "parse_destination_type",
    "parse_destination_config",
    # batches
    "DeliveryMode",
    "BatchingPolicy",
    "PolicyOverrides",
    "DEFAULT_POLICIES",
    "Batch",
    "BatchState",
    "ReadyReason",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    # attempts
    "AttemptOutcome",
    "DeliveryAttempt",
    "DeliveryResult",
]
