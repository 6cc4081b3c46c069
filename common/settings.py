import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    service_name: str = os.getenv("SERVICE_NAME", "hotspot-reconciler")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "hotspot-reconciler")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))
    admin_audience: str = os.getenv("ADMIN_AUDIENCE", "reconciler-admin")
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "")

    database_url: str = os.getenv("DATABASE_URL", "")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "hotspot")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    lock_backend: str = os.getenv("LOCK_BACKEND", "local")  # local|redis
    lock_timeout_seconds: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "30"))

    gateway_api_url: str = os.getenv("GATEWAY_API_URL", "https://api.mercadopago.com")
    gateway_access_token: str = os.getenv("GATEWAY_ACCESS_TOKEN", "")
    gateway_timeout_seconds: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

    hotspot_api_url: str = os.getenv("HOTSPOT_API_URL", "http://localhost:3001")
    hotspot_api_token: str = os.getenv("HOTSPOT_API_TOKEN", "")
    hotspot_timeout_seconds: float = float(os.getenv("HOTSPOT_TIMEOUT_SECONDS", "15"))
    device_max_concurrency: int = int(os.getenv("DEVICE_MAX_CONCURRENCY", "5"))

    poll_interval_seconds: float = float(os.getenv("POLL_INTERVAL_SECONDS", "30"))
    poll_max_age_hours: int = int(os.getenv("POLL_MAX_AGE_HOURS", "24"))
    poll_autostart: bool = os.getenv("POLL_AUTOSTART", "true").lower() == "true"
    queue_workers: int = int(os.getenv("QUEUE_WORKERS", "8"))

    platform_account_id: str = os.getenv("PLATFORM_ACCOUNT_ID", "")
    platform_commission_percent: int = int(os.getenv("PLATFORM_COMMISSION_PERCENT", "10"))

    provisioning_backoff_base_seconds: float = float(os.getenv("PROVISIONING_BACKOFF_BASE_SECONDS", "30"))
    provisioning_backoff_max_seconds: float = float(os.getenv("PROVISIONING_BACKOFF_MAX_SECONDS", "900"))

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"mysql+mysqldb://{self.mysql_user}:{self.mysql_password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"

settings = Settings()
