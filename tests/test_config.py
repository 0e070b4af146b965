import pytest
from pydantic import ValidationError

from orderflow.api.app import build_intake, build_providers
from orderflow.config import IntakeSettings, OrderflowSettings, PayPalSettings, StripeSettings
from orderflow.intake import OrderIntakeClient


class TestOrderflowSettings:
    def test_dev_defaults(self):
        settings = OrderflowSettings(environment="dev", _env_file=None)

        assert settings.jwt_secret == "dev-only-jwt-secret-not-for-production"
        assert settings.is_production is False
        assert settings.check_subscriptions_hour == 3

    def test_short_secret_rejected_outside_dev(self):
        with pytest.raises(ValidationError, match="at least 32 characters"):
            OrderflowSettings(environment="prod", jwt_secret="short", _env_file=None)

    def test_long_secret_accepted_in_prod(self):
        settings = OrderflowSettings(environment="prod", jwt_secret="x" * 32, _env_file=None)

        assert settings.is_production is True

    def test_origins_from_comma_separated_env(self, monkeypatch):
        monkeypatch.setenv("ORDERFLOW_ALLOWED_ORIGINS", "https://shop.test, https://admin.shop.test")

        settings = OrderflowSettings(_env_file=None)

        assert settings.allowed_origins == ["https://shop.test", "https://admin.shop.test"]

    def test_nested_provider_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("ORDERFLOW_STRIPE__API_KEY", "sk_test_123")
        monkeypatch.setenv("ORDERFLOW_INTAKE__URL", "https://intake.test/orders")

        settings = OrderflowSettings(_env_file=None)

        assert settings.stripe.api_key == "sk_test_123"
        assert settings.intake.url == "https://intake.test/orders"
        assert settings.paypal.client_id == ""


class TestBuilders:
    @pytest.mark.asyncio
    async def test_only_configured_providers_are_registered(self):
        settings = OrderflowSettings(
            stripe=StripeSettings(api_key="sk_test_123", webhook_secret="whsec_1"),
            paypal=PayPalSettings(client_id="cid"),
            _env_file=None,
        )

        registry = build_providers(settings)

        assert registry.names() == ["stripe"]
        await registry.close()

    def test_no_intake_without_url(self):
        assert build_intake(OrderflowSettings(_env_file=None)) is None

    @pytest.mark.asyncio
    async def test_intake_client(self):
        settings = OrderflowSettings(
            intake=IntakeSettings(url="https://intake.test/orders", login="shop", password="pw", shop_id="s1"),
            _env_file=None,
        )

        intake = build_intake(settings)

        assert isinstance(intake, OrderIntakeClient)
        assert intake.shop_id == "s1"
        await intake.close()
