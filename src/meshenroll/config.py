"""Application configuration via environment variables and .env file."""

from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")

MESH_BACKENDS = ("tailscale", "mock", "none")


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "MESHENROLL_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/meshenroll.db")

    # Logging
    log_level: str = "info"

    # Mesh directory backend: "tailscale", "mock" or "none"
    mesh_backend: str = "tailscale"

    # Tailscale API (OAuth client-credentials)
    tailscale_api_url: str = "https://api.tailscale.com/api/v2"
    tailscale_client_id: str | None = None
    tailscale_client_secret: str | None = None
    tailscale_timeout: float = 15.0

    # Process-wide default pre-authorization key, used when a tenant has none
    tailscale_auth_key: str | None = None

    # Tags/group handed to enrolling devices
    # Env: MESHENROLL_DEFAULT_TAGS="tag:prod,tag:laptops"
    default_tags: Annotated[list[str], NoDecode] = ["tag:prod"]
    default_group: str = "sap"

    # Enrollment
    enrollment_ttl_hours: int = 24

    # Connection status
    heartbeat_window: int = 300  # seconds a heartbeat counts as "connected"
    status_poll_interval: int = 30  # seconds between monitor checks

    # Background reconciliation (0 disables)
    sync_interval: int = 0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("default_tags", mode="before")
    @classmethod
    def parse_tags(cls, v: object) -> list[str]:
        """Parse comma-separated string or list."""
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        if isinstance(v, list):
            return [s for s in v if s]
        return []

    @field_validator("mesh_backend")
    @classmethod
    def check_mesh_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in MESH_BACKENDS:
            raise ValueError(f"mesh_backend must be one of {', '.join(MESH_BACKENDS)}")
        return v

    def has_tailscale_credentials(self) -> bool:
        return bool(self.tailscale_client_id and self.tailscale_client_secret)


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
