"""Tests for logging, phone helpers, encryption, and the app shell."""

import json
import logging

import pytest
from cryptography.fernet import Fernet

from waconnect.core.encryption import EncryptionError, EncryptionService
from waconnect.core.phone import digits_only, mask_phone_number, normalize_phone_e164
from waconnect.core.tenant_context import (
    clear_tenant_context,
    get_tenant_context,
    set_tenant_context,
    tenant_scope,
)
from waconnect.logging_config import ContextFilter, JSONFormatter


def _record(msg="Integration step", **extra) -> logging.LogRecord:
    record = logging.LogRecord("waconnect.test", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_extra_fields_are_included(self):
        output = json.loads(JSONFormatter().format(_record(step="waba_discovery", success=True)))

        assert output["message"] == "Integration step"
        assert output["severity"] == "INFO"
        assert output["step"] == "waba_discovery"
        assert output["success"] is True

    def test_secret_fields_are_redacted(self):
        output = json.loads(JSONFormatter().format(_record(access_token="EAAB...", code="abc", waba_id="W1")))

        assert output["access_token"] == "[REDACTED]"
        assert output["code"] == "[REDACTED]"
        assert output["waba_id"] == "W1"

    def test_context_filter_adds_tenant(self):
        set_tenant_context(42)
        try:
            record = _record()
            ContextFilter().filter(record)
            output = json.loads(JSONFormatter().format(record))
        finally:
            clear_tenant_context()

        assert output["tenant_id"] == 42
        assert "request_id" not in output

    def test_tenant_scope_restores_previous_tenant(self):
        set_tenant_context(7)
        try:
            with tenant_scope():
                set_tenant_context(42)
                assert get_tenant_context() == 42
            assert get_tenant_context() == 7
        finally:
            clear_tenant_context()


class TestPhoneHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("15551234567", "+15551234567"),
            ("+1 (555) 123-4567", "+15551234567"),
            ("", None),
            (None, None),
            ("n/a", None),
        ],
    )
    def test_normalize_e164(self, raw, expected):
        assert normalize_phone_e164(raw) == expected

    def test_digits_only(self):
        assert digits_only("+1 555-000-1111") == "15550001111"

    def test_mask_phone_number(self):
        assert mask_phone_number("15551234567") == "******4567"
        assert mask_phone_number("12") == "****"
        assert mask_phone_number(None) == "****"


class TestEncryption:
    def test_round_trip_with_prefix(self):
        service = EncryptionService(Fernet.generate_key().decode())

        encrypted = service.encrypt("long-token")

        assert encrypted.startswith("enc:")
        assert service.decrypt(encrypted) == "long-token"

    def test_disabled_without_key(self):
        service = EncryptionService(None)

        assert service.is_enabled is False
        assert service.encrypt("long-token") == "long-token"

    def test_plaintext_rows_stay_readable(self):
        service = EncryptionService(Fernet.generate_key().decode())

        assert service.decrypt("legacy-token") == "legacy-token"

    def test_wrong_key_fails(self):
        encrypted = EncryptionService(Fernet.generate_key().decode()).encrypt("long-token")

        with pytest.raises(EncryptionError):
            EncryptionService(Fernet.generate_key().decode()).decrypt(encrypted)

    def test_encrypted_value_without_key_fails(self):
        encrypted = EncryptionService(Fernet.generate_key().decode()).encrypt("long-token")

        with pytest.raises(EncryptionError):
            EncryptionService(None).decrypt(encrypted)


@pytest.mark.asyncio
async def test_health_and_correlation_header(client):
    response = await client.get("/health", headers={"X-Correlation-Id": "req-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert response.headers["X-Correlation-Id"] == "req-123"
