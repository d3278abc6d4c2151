"""Infrastructure configuration, port derivation and resource naming."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Mapping, Optional
import os
import re

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import InfrastructureError, InstanceOutOfRangeError, InvalidIdentifierError

DEFAULT_PREFIX = "agentqa"
LEGACY_PREFIX = "pocketcoach-agentqa"
LEGACY_COMPOSE_PREFIX = "pocketcoach-milvus-agentqa"
REGISTRY_FILENAME = "instances.json"
LOCK_FILENAME = "instances.lock"
_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


class ResourceKind(str, Enum):
    DB = "db"
    API = "api"
    VECTOR_STORE = "vectorstore"
    TUNNEL = "tunnel"


class InstancePorts(BaseModel):
    db: int
    api: int
    vector_store: int
    tunnel: int

    def values(self) -> list[int]:
        return [self.db, self.api, self.vector_store, self.tunnel]


class InfrastructureConfig(BaseModel):
    """Limits, base ports and state location shared by registry, discovery and cleanup."""

    prefix: str = DEFAULT_PREFIX
    max_instances: int = Field(default=5, ge=1)
    port_range: int = Field(default=10, ge=1)
    stale_instance_timeout: float = Field(default=3600.0, gt=0)
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".agent-qa")
    base_ports: InstancePorts = Field(
        default_factory=lambda: InstancePorts(db=5438, api=4002, vector_store=19532, tunnel=6100)
    )

    @model_validator(mode="after")
    def _check_limits(self) -> "InfrastructureConfig":
        if self.max_instances > self.port_range:
            raise ValueError(
                f"max_instances ({self.max_instances}) cannot exceed port_range ({self.port_range})"
            )
        validate_identifier(self.prefix, "prefix")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: object) -> "InfrastructureConfig":
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        if environ.get("AGENTQA_STATE_DIR"):
            values["state_dir"] = Path(environ["AGENTQA_STATE_DIR"]).expanduser()
        if environ.get("AGENTQA_MAX_INSTANCES"):
            values["max_instances"] = environ["AGENTQA_MAX_INSTANCES"]
        if environ.get("AGENTQA_STALE_TIMEOUT"):
            values["stale_instance_timeout"] = environ["AGENTQA_STALE_TIMEOUT"]
        values.update({key: value for key, value in overrides.items() if value is not None})
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise InfrastructureError(f"Invalid infrastructure config: {exc}") from exc

    @property
    def registry_file(self) -> Path:
        return self.state_dir / REGISTRY_FILENAME

    @property
    def lock_file(self) -> Path:
        return self.state_dir / LOCK_FILENAME

    def instance_dir(self, instance_id: int) -> Path:
        check_instance_id(instance_id, self)
        return self.state_dir / f"instance-{instance_id}"


def validate_identifier(value: str, label: str = "identifier") -> str:
    """Reject anything but letters, digits, ``_`` and ``-`` before it reaches an argv."""

    if not isinstance(value, str) or not _IDENTIFIER_PATTERN.match(value):
        raise InvalidIdentifierError(f"Invalid {label} '{value}': only [a-zA-Z0-9_-] allowed")
    return value


def check_instance_id(instance_id: int, config: Optional[InfrastructureConfig] = None) -> int:
    config = config or InfrastructureConfig()
    if isinstance(instance_id, bool) or not isinstance(instance_id, int):
        raise InstanceOutOfRangeError(f"Instance id must be an integer, got {instance_id!r}")
    if not 0 <= instance_id < config.port_range:
        raise InstanceOutOfRangeError(
            f"Instance id {instance_id} out of range [0, {config.port_range})"
        )
    return instance_id


def calculate_ports(instance_id: int, config: Optional[InfrastructureConfig] = None) -> InstancePorts:
    """Ports for ``instance_id``: ``base + instance_id`` for every resource."""

    config = config or InfrastructureConfig()
    check_instance_id(instance_id, config)
    base = config.base_ports
    return InstancePorts(
        db=base.db + instance_id,
        api=base.api + instance_id,
        vector_store=base.vector_store + instance_id,
        tunnel=base.tunnel + instance_id,
    )


def resource_name(instance_id: int, kind: ResourceKind, config: Optional[InfrastructureConfig] = None) -> str:
    config = config or InfrastructureConfig()
    check_instance_id(instance_id, config)
    return validate_identifier(f"{config.prefix}-{instance_id}-{ResourceKind(kind).value}", "resource name")


def instance_names(instance_id: int, config: Optional[InfrastructureConfig] = None) -> dict[ResourceKind, str]:
    return {kind: resource_name(instance_id, kind, config) for kind in ResourceKind}


def instance_pattern(config: InfrastructureConfig) -> re.Pattern[str]:
    """Regex extracting the instance id from any current or legacy resource name."""

    return re.compile(rf"{re.escape(config.prefix)}-(\d+)(?:-|$)")
