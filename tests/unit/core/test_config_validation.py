"""
Tests for app/shared/core/config.py - Configuration management
"""
import pytest
from unittest.mock import patch
from pydantic import ValidationError

from app.shared.core.config import Settings

FAKE_WEBHOOK_SECRET = "whsec_TEST_SECRET_NOT_REAL_1234567890"


def _production(**overrides) -> Settings:
    values = {
        "ENVIRONMENT": "production",
        "TESTING": False,
        "DATABASE_URL": "postgresql+asyncpg://test",
        "REDIS_URL": "redis://localhost:6379/0",
        "STRIPE_WEBHOOK_SECRET": FAKE_WEBHOOK_SECRET,
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


class TestSettingsValidation:
    def test_defaults_are_valid(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = Settings(_env_file=None)
        assert settings.TAX_RECHECK_DELAYS_SECONDS == [15, 30, 60]
        assert settings.TAX_ESTIMATE_MAX_RATIO == 0.15
        assert settings.REGIONAL_TAX_RATES["NY"] == 0.08
        assert settings.is_production is False

    def test_production_settings_accepted(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = _production()
        assert settings.is_production is True

    def test_production_requires_webhook_secret(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                _production(STRIPE_WEBHOOK_SECRET=None)
        assert "STRIPE_WEBHOOK_SECRET is required in production" in str(exc.value)

    def test_production_refuses_unsigned_webhooks(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                _production(ALLOW_UNSIGNED_WEBHOOKS=True)
        assert "ALLOW_UNSIGNED_WEBHOOKS" in str(exc.value)

    def test_production_requires_shared_rate_limit_storage(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError) as exc:
                _production(REDIS_URL=None)
        assert "REDIS_URL" in str(exc.value)

    def test_testing_flag_forbidden_in_staging(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValidationError):
                Settings(ENVIRONMENT="staging", TESTING=True, _env_file=None)


class TestTaxSettings:
    @pytest.mark.parametrize("ratio", [0, 1, 1.5, -0.1])
    def test_estimate_ratio_must_be_a_fraction(self, ratio):
        with pytest.raises(ValidationError):
            Settings(TAX_ESTIMATE_MAX_RATIO=ratio, _env_file=None)

    def test_recheck_delays_must_ascend(self):
        with pytest.raises(ValidationError):
            Settings(TAX_RECHECK_DELAYS_SECONDS=[60, 30], _env_file=None)

    def test_regional_rates_must_be_fractions(self):
        with pytest.raises(ValidationError):
            Settings(REGIONAL_TAX_RATES={"NY": 8}, _env_file=None)

    def test_negative_proxy_hops_rejected(self):
        with pytest.raises(ValidationError):
            Settings(TRUSTED_PROXY_HOPS=-1, _env_file=None)
