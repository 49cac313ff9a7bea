"""
Client-side validation of Memcached specs.

These checks catch specs the API server would accept but the workload could
never satisfy. A failure is fatal for the current generation.
"""
from memcached_operator.core import constants
from memcached_operator.exceptions import ValidationError
from memcached_operator.models.memcached import Memcached, StorageType, TerminationPolicy

CONFIG_SOURCE_TYPES = ("configMap", "secret", "projected", "emptyDir", "downwardAPI")


def validate_memcached(db: Memcached) -> None:
    """
    Validate a Memcached spec.

    Raises:
        ValidationError: Describing the first rule the spec breaks
    """
    if db.spec_error is not None:
        raise db.spec_error

    spec = db.spec

    if not spec.version:
        raise ValidationError("spec.version is missing", field="spec.version")

    if spec.replicas < 1:
        raise ValidationError(
            f"spec.replicas must be at least 1, got {spec.replicas}", field="spec.replicas"
        )

    if spec.halted and spec.termination_policy == TerminationPolicy.DO_NOT_TERMINATE:
        raise ValidationError(
            "Can't halt, since termination policy is 'DoNotTerminate'",
            field="spec.halted",
        )

    if spec.storage_type == StorageType.DURABLE:
        requests = ((spec.storage or {}).get("resources") or {}).get("requests") or {}
        if not requests.get("storage"):
            raise ValidationError(
                "spec.storage.resources.requests.storage is required for Durable storage",
                field="spec.storage",
            )

    if spec.config_source is not None:
        _validate_config_source(spec.config_source)

    _validate_pod_template(spec.pod_template.spec)


def _validate_config_source(source: dict) -> None:
    present = [t for t in CONFIG_SOURCE_TYPES if source.get(t) is not None]
    if len(present) != 1:
        raise ValidationError(
            f"spec.configSource must set exactly one of {', '.join(CONFIG_SOURCE_TYPES)}",
            field="spec.configSource",
        )
    kind = present[0]
    ref = source[kind]
    if kind == "configMap" and not ref.get("name"):
        raise ValidationError("spec.configSource.configMap.name is required", field="spec.configSource")
    if kind == "secret" and not ref.get("secretName"):
        raise ValidationError(
            "spec.configSource.secret.secretName is required", field="spec.configSource"
        )


def _validate_pod_template(pod_spec: dict) -> None:
    for index, env in enumerate(pod_spec.get("env") or []):
        name = env.get("name") if isinstance(env, dict) else None
        if not name:
            raise ValidationError(
                f"spec.podTemplate.spec.env[{index}] has no name",
                field="spec.podTemplate.spec.env",
            )
        if name in constants.RESERVED_ENV_VARS:
            raise ValidationError(
                f"environment variable {name} is managed by the operator",
                field="spec.podTemplate.spec.env",
            )

    args = pod_spec.get("args")
    if args is not None and (
        not isinstance(args, list) or not all(isinstance(a, str) for a in args)
    ):
        raise ValidationError(
            "spec.podTemplate.spec.args must be a list of strings",
            field="spec.podTemplate.spec.args",
        )
