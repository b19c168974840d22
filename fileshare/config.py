from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "fileshare"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8080
    database_url: str = "sqlite:///./fileshare.db"
    sqlite_busy_timeout_seconds: float = 5.0
    max_upload_size_bytes: int = 3 * 1024 * 1024 * 1024
    staged_chunk_ttl_seconds: int = 86400
    cleanup_enabled: bool = True
    cleanup_interval_seconds: int = 86400
    discard_staged_on_complete: bool = True
    cors_allow_origins: str = "*"
    tracing_enabled: bool = False
    tracing_service_name: str = "fileshare"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True

    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


settings = Settings()
