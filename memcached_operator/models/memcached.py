"""
Pydantic models for the Memcached resource.

The API server hands us plain dicts in camelCase; these models give the
reconciler typed access to spec and status and render status back in the
wire shape.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from memcached_operator.core import constants
from memcached_operator.exceptions import ValidationError


class TerminationPolicy(str, Enum):
    """What happens to dependents when the resource is deleted."""

    DO_NOT_TERMINATE = constants.TERMINATION_DO_NOT_TERMINATE
    HALT = constants.TERMINATION_HALT
    DELETE = constants.TERMINATION_DELETE
    WIPE_OUT = constants.TERMINATION_WIPE_OUT


class StorageType(str, Enum):
    """Whether the data volume is backed by a PVC."""

    DURABLE = "Durable"
    EPHEMERAL = "Ephemeral"


class WireModel(BaseModel):
    """Base for models read from and written to the API in camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class PodTemplate(WireModel):
    """Subset of a PodTemplateSpec passed through to the workload."""

    metadata: Dict[str, Any] = Field(default_factory=dict)
    spec: Dict[str, Any] = Field(default_factory=dict)


class MemcachedSpec(WireModel):
    """Desired state authored by the user."""

    version: Optional[str] = Field(default=None, description="Memcached image tag")
    replicas: int = Field(default=1, description="Number of memcached pods")
    pod_template: PodTemplate = Field(default_factory=PodTemplate)
    config_source: Optional[Dict[str, Any]] = Field(
        default=None, description="Volume source mounted as custom-config"
    )
    storage_type: StorageType = Field(default=StorageType.DURABLE)
    storage: Optional[Dict[str, Any]] = Field(default=None, description="PVC spec for the data volume")
    termination_policy: TerminationPolicy = Field(default=TerminationPolicy.HALT)
    halted: bool = Field(default=False)


class Condition(WireModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[str] = None
    observed_generation: Optional[int] = None


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class MemcachedStatus(WireModel):
    """Observed state written by the operator."""

    phase: Optional[str] = None
    observed_generation: Optional[int] = None
    conditions: List[Condition] = Field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MemcachedStatus":
        try:
            return cls.model_validate(data or {})
        except PydanticValidationError:
            # Garbage in status is overwritten by the next write
            return cls()

    def get_condition(self, type_: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == type_:
                return condition
        return None

    def set_condition(
        self,
        type_: str,
        status: bool,
        reason: str,
        message: str = "",
        generation: Optional[int] = None,
    ) -> None:
        """
        Upsert a condition.

        lastTransitionTime only moves when the condition's status flips.
        """
        status_value = "True" if status else "False"
        existing = self.get_condition(type_)
        if existing is None:
            self.conditions.append(
                Condition(
                    type=type_,
                    status=status_value,
                    reason=reason,
                    message=message,
                    last_transition_time=utc_timestamp(),
                    observed_generation=generation,
                )
            )
            return

        if existing.status != status_value:
            existing.last_transition_time = utc_timestamp()
        existing.status = status_value
        existing.reason = reason
        existing.message = message
        existing.observed_generation = generation

    def remove_condition(self, type_: str) -> None:
        self.conditions = [c for c in self.conditions if c.type != type_]


class Memcached:
    """
    A Memcached object as read from the API.

    The spec is parsed eagerly; a spec that does not parse is kept as
    spec_error so the reconciler can report it through status instead of
    crashing the pass. Deletion still works with such a spec.
    """

    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw
        metadata = raw.get("metadata") or {}
        self.name: str = metadata.get("name", "")
        self.namespace: str = metadata.get("namespace", "")
        self.uid: Optional[str] = metadata.get("uid")
        self.generation: int = metadata.get("generation") or 0
        self.resource_version: Optional[str] = metadata.get("resourceVersion")
        self.deletion_timestamp: Optional[str] = metadata.get("deletionTimestamp")
        self.finalizers: List[str] = list(metadata.get("finalizers") or [])
        self.status = MemcachedStatus.from_dict(raw.get("status"))

        self.spec_error: Optional[ValidationError] = None
        try:
            self.spec = MemcachedSpec.model_validate(raw.get("spec") or {})
        except PydanticValidationError as e:
            self.spec_error = spec_error_from_pydantic(e)
            self.spec = MemcachedSpec()

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    @property
    def termination_policy(self) -> TerminationPolicy:
        """
        Effective termination policy.

        Falls back to Halt when the stored value does not parse, so a broken
        spec never escalates to data deletion.
        """
        if self.spec_error is None:
            return self.spec.termination_policy
        value = (self.raw.get("spec") or {}).get("terminationPolicy")
        try:
            return TerminationPolicy(value) if value else TerminationPolicy.HALT
        except ValueError:
            return TerminationPolicy.HALT


def spec_error_from_pydantic(error: PydanticValidationError) -> ValidationError:
    """Turn a pydantic error into a ValidationError naming the first bad field."""
    first = error.errors()[0]
    field = "spec." + ".".join(str(part) for part in first.get("loc", ()))
    return ValidationError(
        f"Invalid value for {field}: {first.get('msg', 'invalid')}",
        field=field,
        details={"errors": [e.get("msg") for e in error.errors()]},
    )
