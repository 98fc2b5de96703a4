"""
Tests for settings — TTL validation, derived values, env overrides.
"""

from datetime import timedelta

import pytest

from site_status.config import DEFAULT_AUDIT_TTL_DAYS, Settings


class TestAuditTtl:
    def test_default(self):
        assert Settings().audit_ttl_days == DEFAULT_AUDIT_TTL_DAYS

    def test_valid_value(self):
        s = Settings(audit_ttl_days=7)
        assert s.audit_ttl_days == 7
        assert s.audit_ttl == timedelta(days=7)

    @pytest.mark.parametrize("value", ["abc", 0, -3, "", None])
    def test_invalid_falls_back(self, value):
        assert Settings(audit_ttl_days=value).audit_ttl_days == 30

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AUDIT_TTL_DAYS", "14")
        assert Settings().audit_ttl_days == 14

    def test_invalid_env(self, monkeypatch):
        monkeypatch.setenv("AUDIT_TTL_DAYS", "forever")
        assert Settings().audit_ttl_days == 30


class TestAmqpUrl:
    def test_default_vhost(self):
        s = Settings(rabbitmq_username="u", rabbitmq_password="p", rabbitmq_host="mq", rabbitmq_port=5673)
        assert s.amqp_url == "amqp://u:p@mq:5673/"

    def test_named_vhost(self):
        s = Settings(rabbitmq_vhost="/audits")
        assert s.amqp_url.endswith("/audits")
