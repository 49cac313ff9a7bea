"""
Helpers for working with Kubernetes objects as plain dicts.
"""
import copy
from typing import Any, Dict, Optional

from memcached_operator.core.constants import KIND, LABEL_DATABASE_KIND, LABEL_DATABASE_NAME


def identity_labels(name: str, kind: str = KIND) -> Dict[str, str]:
    """Identity label pair tying a dependent object to its database."""
    return {
        LABEL_DATABASE_NAME: name,
        LABEL_DATABASE_KIND: kind,
    }


def label_selector(labels: Dict[str, str]) -> str:
    """Render an equality-based label selector, e.g. "a=b,c=d"."""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def has_identity(obj: Dict[str, Any], name: str, kind: str = KIND) -> bool:
    labels = obj.get("metadata", {}).get("labels") or {}
    return all(labels.get(k) == v for k, v in identity_labels(name, kind).items())


def meta(obj: Dict[str, Any], field: str, default: Any = None) -> Any:
    return (obj.get("metadata") or {}).get(field, default)


def is_subset(desired: Any, observed: Any) -> bool:
    """
    Check that every field in desired is present with the same value in observed.

    Lists are compared element-wise and must have equal length, so defaulted
    fields the API server adds inside list items do not count as drift.
    """
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return False
        for key, value in desired.items():
            if value is None:
                if observed.get(key) is not None:
                    return False
                continue
            if key not in observed or not is_subset(value, observed[key]):
                return False
        return True

    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            return False
        return all(is_subset(d, o) for d, o in zip(desired, observed))

    return desired == observed


def merge_patch(target: Optional[Dict[str, Any]], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a JSON merge patch (RFC 7386) and return a new dict."""
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict):
            result[key] = merge_patch(result.get(key), value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def describe(obj: Dict[str, Any]) -> str:
    """Short "Kind/name" description for logs and error details."""
    return f"{obj.get('kind', '?')}/{meta(obj, 'name', '?')}"
