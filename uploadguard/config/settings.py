from typing import ClassVar, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Pipeline
    WORKERS: int = 4
    FAIL_ON: Optional[str] = None

    # Policy documents; the packaged default is used when POLICY_PATH is unset
    POLICY_PATH: Optional[str] = None
    OVERRIDE_POLICY_PATH: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # HTTP surface
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    model_config: ClassVar = {
        "env_prefix": "UPLOADGUARD_",
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


settings = Settings()
