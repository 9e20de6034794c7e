from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Required for background workers (RLS bypass)

    # Managed host (single SSH channel)
    ssh_host: str = ""
    ssh_port: int = 22
    ssh_user: str = "root"
    ssh_password: Optional[str] = None
    ssh_private_key: Optional[str] = None  # PEM string; takes precedence over password
    ssh_connect_timeout: int = 30
    ssh_keepalive_interval: int = 10

    # Port allocation / detection
    port_range_min: int = 3100
    port_range_max: int = 8900
    port_detect_min: int = 3000
    port_detect_max: int = 9000
    port_detect_retry_delay: float = 5.0
    port_verify_attempts: int = 3
    port_verify_backoff: float = 1.0
    settle_delay_seconds: float = 8.0
    process_log_lines: int = 100

    # Reverse proxy / TLS
    base_domain: str = "projectmarket.in"
    backend_domain_suffix: str = "-api"
    enable_ssl: bool = False
    certbot_email: Optional[str] = None
    nginx_sites_available: str = "/etc/nginx/sites-available"
    nginx_sites_enabled: str = "/etc/nginx/sites-enabled"

    # Opaque build/start tool on the managed host
    deployer_path: str = "/root/.openclaw/workspace/server-dashboard"
    deployer_module: str = "ai_deployer"
    deployer_function: str = "ai_auto_deploy"

    # Subdomains
    subdomain_length: int = 6
    subdomain_fallback_length: int = 8
    subdomain_max_attempts: int = 100

    # Subscription lifecycle policy
    grace_period_days: int = 7
    retained_deployments_unentitled: int = 1
    monitor_interval_seconds: int = 3600
    monitor_enabled: bool = True

    # App
    app_name: str = "deploy-engine"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
