from __future__ import annotations

from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "OPTILOOP_"

CONTROLLER_KEYS = ("max_reconcile_steps", "default_retry_after_seconds", "log_level")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX)

    server_address: str = ""
    api_timeout_seconds: float = 30.0
    metric_timeout_seconds: float = 10.0
    metric_retry_delay_seconds: float = 5.0
    default_retry_after_seconds: float = 5.0
    default_namespace: str = "default"
    log_level: str = "INFO"
    max_reconcile_steps: int = 50

    def env_mapping(self, include_controller: bool = False) -> Dict[str, str]:
        env: Dict[str, str] = {}
        for key, value in self.model_dump().items():
            if key in CONTROLLER_KEYS and not include_controller:
                continue
            if value is None:
                continue
            env[(ENV_PREFIX + key).upper()] = str(value)
        return env
