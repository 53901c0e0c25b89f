"""Tests for HTTP error mapping."""

import httpx
import pytest

from cakemail_mcp.errors import (
    AuthenticationError,
    BadRequestError,
    CakemailError,
    ClientError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitError,
    ServerError,
    ValidationError,
    create_error_from_response,
    parse_error_body,
)

REQUEST = httpx.Request("GET", "https://api.cakemail.test/lists")


def response(status, **kwargs):
    return httpx.Response(status, request=REQUEST, **kwargs)


@pytest.mark.parametrize(
    "status, error_type",
    [
        (400, BadRequestError),
        (401, AuthenticationError),
        (403, ForbiddenError),
        (404, NotFoundError),
        (409, ConflictError),
        (422, ValidationError),
        (429, RateLimitError),
        (418, ClientError),
        (500, ServerError),
        (503, ServerError),
    ],
)
def test_status_maps_to_error_type(status, error_type):
    error = create_error_from_response(response(status, json={"detail": "nope"}))
    assert type(error) is error_type
    assert error.status_code == status
    assert error.response == {"detail": "nope"}


def test_message_includes_detail_and_endpoint():
    error = create_error_from_response(
        response(503, json={"detail": "maintenance"}), endpoint="GET /lists"
    )
    assert str(error) == "Server error (503): maintenance [GET /lists]"


def test_detail_falls_back_through_known_keys():
    error = create_error_from_response(response(400, json={"error_description": "bad grant"}))
    assert error.message == "Bad Request: bad grant"
    error = create_error_from_response(response(400, json={"message": "missing name"}))
    assert error.message == "Bad Request: missing name"


def test_non_json_body_is_wrapped():
    bad_gateway = response(502, text="upstream exploded")
    assert parse_error_body(bad_gateway) == {"detail": "upstream exploded"}
    assert "upstream exploded" in str(create_error_from_response(bad_gateway))


def test_empty_body_uses_reason_phrase():
    error = create_error_from_response(response(404))
    assert error.message == "Not found: Not Found"


def test_validation_errors_are_listed_per_field():
    body = {
        "detail": [
            {"loc": ["body", "email"], "msg": "value is not a valid email address", "type": "value_error"},
            {"loc": ["body", "name"], "msg": "field required", "type": "missing"},
        ]
    }
    error = create_error_from_response(response(422, json=body))

    assert isinstance(error, ValidationError)
    assert error.message == (
        "Validation Error: body.email: value is not a valid email address; body.name: field required"
    )
    assert len(error.validation_errors) == 2
    assert error.get_field_errors("email")[0]["type"] == "value_error"
    assert error.get_field_errors("phone") == []


@pytest.mark.parametrize("header, expected", [("12", 12.0), ("1.5", 1.5), ("soon", None)])
def test_retry_after_header(header, expected):
    error = create_error_from_response(response(429, json={}, headers={"Retry-After": header}))
    assert isinstance(error, RateLimitError)
    assert error.retry_after == expected


def test_default_status_codes():
    assert NotFoundError("x").status_code == 404
    assert RateLimitError("x").status_code == 429
    assert CakemailError("x").status_code == 0


def test_with_message_keeps_status_and_body():
    original = ServerError("Server error (500): boom", 500, {"detail": "boom"})
    renamed = original.with_message("Server error (500): boom (Failed after 4 attempts)")

    assert type(renamed) is ServerError
    assert renamed is not original
    assert str(renamed).endswith("(Failed after 4 attempts)")
    assert renamed.response == {"detail": "boom"}
    assert str(original) == "Server error (500): boom"
