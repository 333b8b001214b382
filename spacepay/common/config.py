"""Central environment-driven settings for the payment service and client.

Loaded once per process. Behavior is controlled by environment variables (see
`.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "spacepay-payments"
    log_level: str = "INFO"
    database_url: str = "sqlite+pysqlite:///./spacepay.db"
    # Deployments run the Alembic scripts instead.
    auto_create_schema: bool = False

    mpesa_environment: str = "sandbox"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = "174379"
    mpesa_passkey: str = ""
    mpesa_callback_url: str = "http://localhost:8000/payments/mpesa/callback"
    phone_country_code: str = "254"

    # Outbound provider calls are bounded independently of the client window.
    gateway_timeout_seconds: float = 10.0
    reconcile_grace_seconds: int = 30
    reconcile_sweep_interval_seconds: float = 15.0
    reconcile_sweep_batch: int = 50

    client_poll_interval_seconds: float = 3.0
    client_timeout_seconds: float = 120.0
    client_request_timeout_seconds: float = 5.0
    api_base_url: str = "http://localhost:8000"

    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def mpesa_base_url(self) -> str:
        if self.mpesa_environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"


settings = CommonSettings()
