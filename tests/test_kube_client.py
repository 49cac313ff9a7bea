"""
Tests for API error translation.
"""
import asyncio
import json

import pytest
from kubernetes_asyncio.client import ApiException

from memcached_operator.exceptions import (
    ConflictError,
    KubernetesError,
    TransientAPIError,
    ValidationError,
)
from memcached_operator.services.kube_client import translate_api_error


def api_error(status, message=None):
    error = ApiException(status=status, reason="Reason")
    if message is not None:
        error.body = json.dumps({"message": message})
    return error


@pytest.mark.parametrize(
    "status,expected",
    [
        (409, ConflictError),
        (400, ValidationError),
        (422, ValidationError),
        (429, TransientAPIError),
        (503, TransientAPIError),
        (403, KubernetesError),
    ],
)
def test_status_codes_map_to_taxonomy(status, expected):
    assert isinstance(translate_api_error(api_error(status), "StatefulSet", "mc1"), expected)


def test_api_message_is_carried():
    error = translate_api_error(
        api_error(422, "spec.selector: field is immutable"), "StatefulSet", "mc1"
    )
    assert "field is immutable" in error.message


def test_connection_failures_are_transient():
    assert isinstance(translate_api_error(asyncio.TimeoutError(), "Service", "mc1"), TransientAPIError)
    assert isinstance(translate_api_error(ConnectionError("reset"), "Service", "mc1"), TransientAPIError)


def test_unknown_errors_pass_through():
    error = RuntimeError("bug")
    assert translate_api_error(error, "Service", "mc1") is error
