"""
Tests for the error code system: exception types, registry validation
and the FastAPI handler.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ace_assistant.core.errors import (
    CODE_PATTERN,
    AceError,
    ConfigurationError,
    FilterError,
    SandboxError,
    UpstreamError,
    ValidationError,
)
from ace_assistant.core.errors.middleware import ace_error_handler
from ace_assistant.core.errors.registry import ErrorRegistry, RegistryValidationError, error_registry


def _app(exc: AceError) -> TestClient:
    app = FastAPI()
    app.add_exception_handler(AceError, ace_error_handler)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app)


class TestExceptions:
    def test_default_codes(self):
        assert AceError().code == "ACE-SYS-001"
        assert ValidationError("bad").code == "ACE-API-001"
        assert SandboxError("bad").code == "ACE-SQL-001"
        assert FilterError("bad").code == "ACE-FLT-001"
        assert UpstreamError("down").code == "ACE-UPS-001"

    def test_invalid_code_format(self):
        with pytest.raises(ValueError):
            AceError("x", code="SQL-1")

    def test_configuration_error_reason(self):
        error = ConfigurationError("Search API key")
        assert error.reason == "Search API key not configured."
        assert error.context == {"dependency": "Search API key"}

    def test_reason_falls_back_to_code(self):
        assert AceError().reason == "ACE-SYS-001"

    def test_sandbox_error_is_validation_error(self):
        assert issubclass(SandboxError, ValidationError)
        assert issubclass(FilterError, ValidationError)


class TestRegistry:
    def test_every_default_code_registered(self):
        for cls in (AceError, ValidationError, SandboxError, FilterError, UpstreamError, ConfigurationError):
            assert error_registry.get(cls.default_code) is not None, cls.__name__

    def test_codes_are_unique_and_well_formed(self):
        codes = error_registry.all_codes()
        assert len(codes) == len(set(codes)) == len(error_registry)
        assert all(CODE_PATTERN.match(code) for code in codes)

    def test_rejects_domain_mismatch(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text(
            "schema_version: 1\n"
            "errors:\n"
            "  - code: ACE-SQL-009\n"
            "    domain: API\n"
            "    title: t\n"
            "    severity: INFO\n"
            "    retryable: false\n"
            "    http_status: 400\n"
            "    safe_message: m\n"
        )
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))

    def test_upstream_entries_cannot_expose_detail(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text(
            "errors:\n"
            "  - code: ACE-UPS-009\n"
            "    domain: UPS\n"
            "    title: t\n"
            "    severity: WARN\n"
            "    retryable: true\n"
            "    http_status: 502\n"
            "    safe_message: m\n"
            "    expose_detail: true\n"
        )
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))

    def test_rejects_non_error_status(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text(
            "errors:\n"
            "  - code: ACE-API-009\n"
            "    domain: API\n"
            "    title: t\n"
            "    severity: INFO\n"
            "    retryable: false\n"
            "    http_status: 200\n"
            "    safe_message: m\n"
        )
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))

    def test_rejects_missing_fields(self, tmp_path):
        path = tmp_path / "registry.yaml"
        path.write_text("errors:\n  - code: ACE-SQL-009\n")
        with pytest.raises(RegistryValidationError):
            ErrorRegistry().load(str(path))


class TestHandler:
    def test_validation_detail_exposed(self):
        response = _app(SandboxError("Only SELECT statements are allowed.")).get("/boom")
        assert response.status_code == 400
        body = response.json()["error"]
        assert body["code"] == "ACE-SQL-001"
        assert body["message"] == "Only SELECT statements are allowed."
        assert body["retryable"] is False

    def test_upstream_detail_hidden(self):
        response = _app(UpstreamError("Data API GET violations failed: 502 at 10.0.0.4", code="ACE-UPS-002")).get("/boom")
        assert response.status_code == 502
        assert response.json()["error"]["message"] == "The data API is temporarily unavailable."

    def test_configuration_error_is_503(self):
        response = _app(ConfigurationError("Database connection")).get("/boom")
        assert response.status_code == 503
        assert response.json()["error"]["message"] == "Database connection not configured."

    def test_unregistered_code_is_500(self):
        response = _app(AceError("x", code="ACE-SYS-999")).get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "An unexpected error occurred."
