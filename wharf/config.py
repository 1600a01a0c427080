"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class WharfSettings(BaseSettings):
    data_dir: Path = Path(".wharf")
    servers_dir: Path = Path(".wharf/servers")
    db_path: Path = Path(".wharf/wharf.db")
    log_level: str = "INFO"

    # HTTP API
    api_host: str = "127.0.0.1"
    api_port: int = 8430

    # Supervision timings (seconds)
    liveness_grace_seconds: float = 0.5  # not a readiness probe
    stop_timeout_seconds: float = 5.0
    clone_timeout_seconds: float = 300.0
    install_timeout_seconds: float = 900.0

    # A workload's config map is written to <directory>/<config_filename>
    # and the path exported as <config_env_var>
    config_filename: str = ".wharf-config.json"
    config_env_var: str = "WHARF_CONFIG_PATH"
    log_query_limit: int = 1000

    model_config = {"env_prefix": "WHARF_"}


settings = WharfSettings()
