"""Client device configuration via environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    model_config = {"env_prefix": "CLIENT_"}

    storage_dir: str = Field(default="backend/data/client", min_length=1)
    backend_url: str = "http://localhost:8720"
    auth_token: str | None = None
    request_timeout: float = Field(default=10.0, gt=0)
    health_check_interval: float = Field(default=30.0, gt=0)
    # Seconds a transient connectivity notice stays visible
    notice_seconds: float = Field(default=5.0, gt=0)
    log_dir: str | None = None
