"""Environment-driven runner settings."""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional
import os

from pydantic import BaseModel, ValidationError

from .adapters import DEFAULT_CHAT_ENDPOINT, DEFAULT_RETRY_DELAY, DEFAULT_TIMEOUT, HttpAgent
from .context import DEFAULT_USER_ID
from .errors import ConfigError
from .parallel import DEFAULT_CONCURRENCY
from .pricing import PriceTable

DEFAULT_AGENT_URL = "http://127.0.0.1:4002"

_ENV_FIELDS = {
    "AGENTQA_AGENT_URL": "agent_url",
    "AGENTQA_AGENT_TOKEN": "agent_token",
    "AGENTQA_CHAT_ENDPOINT": "chat_endpoint",
    "AGENTQA_TIMEOUT": "timeout",
    "AGENTQA_RETRIES": "retries",
    "AGENTQA_RETRY_DELAY": "retry_delay",
    "AGENTQA_CONCURRENCY": "concurrency",
    "AGENTQA_USER_ID": "user_id",
    "AGENTQA_LOG_LEVEL": "log_level",
    "AGENTQA_PRICES": "prices_file",
}


class RunnerSettings(BaseModel):
    agent_url: str = DEFAULT_AGENT_URL
    agent_token: str = ""
    chat_endpoint: str = DEFAULT_CHAT_ENDPOINT
    timeout: float = DEFAULT_TIMEOUT
    retries: int = 0
    retry_delay: float = DEFAULT_RETRY_DELAY
    concurrency: int = DEFAULT_CONCURRENCY
    user_id: str = DEFAULT_USER_ID
    log_level: str = "INFO"
    prices_file: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: object) -> "RunnerSettings":
        """Build settings from ``AGENTQA_*`` variables; non-None overrides win."""

        environ = os.environ if environ is None else environ
        values: dict[str, object] = {
            field: environ[name] for name, field in _ENV_FIELDS.items() if environ.get(name)
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid runner settings: {exc}") from exc

    def build_prices(self) -> Optional[PriceTable]:
        return PriceTable.from_file(self.prices_file) if self.prices_file else None

    def build_agent(self) -> HttpAgent:
        return HttpAgent(
            self.agent_url,
            token=self.agent_token,
            chat_endpoint=self.chat_endpoint,
            timeout=self.timeout,
            retries=self.retries,
            retry_delay=self.retry_delay,
        )
