# loadfleet/models/loadfleet_settings.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LoadfleetSettings(BaseSettings):
    """
    Process-level defaults for the CLI, read from environment variables
    prefixed with `LOADFLEET_`, e.g. `LOADFLEET_CONFIG_PATH=loadtest.yaml`.
    Command-line flags win over these.
    """

    model_config = SettingsConfigDict(env_prefix="LOADFLEET_")

    config_path: Optional[str] = None
    aws_properties: str = "aws.properties"
    log_level: str = "INFO"
