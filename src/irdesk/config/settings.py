"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict

from irdesk.models.base import IncidentSeverity


class Settings(BaseSettings):
    """IRDesk configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="IRDESK_", env_file=".env", extra="ignore")

    # Application
    app_name: str = "IRDesk"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"  # development, staging, production
    log_level: str = "INFO"
    log_json: bool = False

    # API
    api_host: str = "0.0.0.0"  # noqa: S104  # nosec B104
    api_port: int = 8000
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Database (empty = in-memory incident store)
    database_url: str = ""

    # Auto-containment
    auto_containment_enabled: bool = True
    auto_containment_severity_threshold: IncidentSeverity = IncidentSeverity.HIGH
    max_auto_actions: int = 5
    action_timeout_seconds: float = 300.0

    # Escalation (minutes since creation; None disables the tier)
    escalation_critical_minutes: int | None = 15
    escalation_high_minutes: int | None = 60
    escalation_medium_minutes: int | None = 240
    escalation_low_minutes: int | None = None
    escalation_refire_minutes: int = 60
    escalation_sweep_interval_seconds: int = 60

    # Retention
    retention_incident_days: int = 365
    retention_report_days: int = 2555  # 7 years
    retention_sweep_interval_seconds: int = 86400

    # Periodic jobs
    metrics_refresh_interval_seconds: int = 300
    compliance_report_interval_seconds: int = 604800

    # Event bus
    subscriber_queue_size: int = 1000

    # Webhooks
    webhook_url: str = ""
    webhook_secret: str = ""
    webhook_timeout: float = 10.0

    def escalation_thresholds(self) -> dict[IncidentSeverity, int | None]:
        return {
            IncidentSeverity.CRITICAL: self.escalation_critical_minutes,
            IncidentSeverity.HIGH: self.escalation_high_minutes,
            IncidentSeverity.MEDIUM: self.escalation_medium_minutes,
            IncidentSeverity.LOW: self.escalation_low_minutes,
        }
