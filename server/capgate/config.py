"""capgate - Configuration"""

from pydantic_settings import BaseSettings
from functools import lru_cache


from pydantic import Field

class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Any SQLAlchemy URL. Ignored when azure_sql_server is set.
    database_url: str = "sqlite:///capgate.db"

    # Azure SQL Database (authenticated via Entra ID, so no password needed)
    azure_sql_server: str = ""
    azure_sql_database: str = "capgate"
    # Renamed env vars to avoid conflict with DefaultAzureCredential
    azure_tenant_id: str = Field(default="", validation_alias="API_AZURE_TENANT_ID")
    azure_client_id: str = Field(default="", validation_alias="API_AZURE_CLIENT_ID")

    # CORS origins (comma-separated URLs)
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    log_level: str = "INFO"

    def get_cors_origins_list(self) -> list[str]:
        """Get list of allowed CORS origins."""
        if not self.cors_origins:
            return ["http://localhost:3000"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    def uses_azure_sql(self) -> bool:
        return bool(self.azure_sql_server)

    def entra_auth_enabled(self) -> bool:
        return bool(self.azure_client_id and self.azure_tenant_id)

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
