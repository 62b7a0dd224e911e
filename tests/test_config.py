"""Tests for configuration and logging setup."""

import logging
from decimal import Decimal

import pytest

from payper.config import (
    configure_logging,
    get_model_prices,
    get_settings,
    reset_model_prices,
    set_model_prices,
)
from payper.errors import UnknownModel
from payper.models import get_model, list_models
from payper.schemas import MediaType


class TestModelPrices:
    """Test the price table and its overrides."""

    def test_defaults(self):
        prices = get_model_prices()
        assert prices["gpt-image-1"] == Decimal("0.042")
        assert prices["veo-3.1"] == Decimal("0.36")

    def test_json_override(self, monkeypatch):
        monkeypatch.setenv("PAYPER_MODEL_PRICES_JSON", '{"qwen": "0.05", "sora-2": "bad"}')
        prices = get_model_prices()
        assert prices["qwen"] == Decimal("0.05")
        assert prices["sora-2"] == Decimal("0.21")

    def test_per_model_env_wins(self, monkeypatch):
        monkeypatch.setenv("PAYPER_MODEL_PRICES_JSON", '{"ideogram": "0.07"}')
        monkeypatch.setenv("PRICE_IMAGE_IDEOGRAM", "0,08")
        assert get_model_prices()["ideogram"] == Decimal("0.08")

    def test_malformed_json_ignored(self, monkeypatch):
        monkeypatch.setenv("PAYPER_MODEL_PRICES_JSON", "[not json")
        assert get_model_prices()["qwen"] == Decimal("0.03")

    def test_set_and_reset(self):
        set_model_prices({"qwen": "0.04"})
        assert get_model("qwen").price_usd == Decimal("0.04")
        reset_model_prices()
        assert get_model("qwen").price_usd == Decimal("0.03")

    def test_set_rejects_bad_prices(self):
        with pytest.raises(ValueError):
            set_model_prices({"qwen": "-1"})
        with pytest.raises(ValueError):
            set_model_prices({})


class TestCatalog:
    """Test the model catalog."""

    def test_filter_by_media_type(self):
        videos = list_models(MediaType.VIDEO)
        assert {m.id for m in videos} == {"sora-2", "veo-3.1"}
        assert len(list_models()) == 5

    def test_unknown_model(self):
        with pytest.raises(UnknownModel):
            get_model("midjourney")


class TestSettings:
    """Test environment-driven settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PAYPER_FEE_PERCENT", raising=False)
        monkeypatch.delenv("PAYPER_DRY_RUN", raising=False)
        settings = get_settings()
        assert settings.fee_percent == Decimal("10")
        assert settings.pending_ttl_seconds == 900.0
        assert settings.dry_run is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("PAYPER_FEE_PERCENT", "0")
        monkeypatch.setenv("PAYPER_BUYBACK_BATCH_SIZE", "4")
        monkeypatch.setenv("PAYPER_DRY_RUN", "yes")
        monkeypatch.setenv("KIE_API_KEY", "kie-secret")
        monkeypatch.setenv("PAYPER_DB_PATH", "/tmp/payper.db")

        settings = get_settings()
        assert settings.fee_percent == Decimal("0")
        assert settings.buyback_batch_size == 4
        assert settings.dry_run is True
        assert settings.provider_api_key == "kie-secret"
        assert settings.db_path == "/tmp/payper.db"

    def test_bad_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("PAYPER_BUYBACK_BATCH_SIZE", "ten")
        monkeypatch.setenv("PAYPER_FALLBACK_TOKEN_PRICE_USD", "-5")
        settings = get_settings()
        assert settings.buyback_batch_size == 10
        assert settings.fallback_token_price_usd == Decimal("0.0001")


def test_configure_logging_is_idempotent():
    logger = configure_logging(logging.DEBUG)
    handlers = list(logger.handlers)
    configure_logging("INFO")

    assert logger.name == "payper"
    assert logger.handlers == handlers
    assert logger.level == logging.INFO
