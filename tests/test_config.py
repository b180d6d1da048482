"""Tests for environment-driven settings."""

from collab.core.config import Settings


class TestGatewayCredentials:
    def test_prefixed_names_win(self, monkeypatch):
        monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_bare_key")
        monkeypatch.setenv("APP_RAZORPAY_KEY_ID", "rzp_app_key")
        monkeypatch.setenv("APP_RAZORPAY_KEY_SECRET", "app_secret")
        monkeypatch.setenv("APP_RAZORPAY_WEBHOOK_SECRET", "app_hook_secret")

        settings = Settings(_env_file=None)
        assert settings.razorpay_key_id == "rzp_app_key"
        assert settings.razorpay_key_secret == "app_secret"
        assert settings.razorpay_webhook_secret == "app_hook_secret"
        assert settings.gateway_configured

    def test_bare_names_still_read(self, monkeypatch):
        monkeypatch.delenv("APP_RAZORPAY_KEY_ID", raising=False)
        monkeypatch.delenv("APP_RAZORPAY_KEY_SECRET", raising=False)
        monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_bare_key")
        monkeypatch.setenv("RAZORPAY_KEY_SECRET", "bare_secret")

        settings = Settings(_env_file=None)
        assert settings.razorpay_key_id == "rzp_bare_key"
        assert settings.razorpay_key_secret == "bare_secret"

    def test_other_settings_keep_the_prefix(self, monkeypatch):
        monkeypatch.setenv("APP_FAILED_ORDER_WATCH_HOURS", "24")
        assert Settings(_env_file=None).failed_order_watch_hours == 24
