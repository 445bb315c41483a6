"""forkchat configuration management."""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

FORKCHAT_HOME = Path.home() / ".forkchat"
FORKCHAT_DB = FORKCHAT_HOME / "forkchat.db"
FORKCHAT_CONFIG = FORKCHAT_HOME / "config.json"
FORKCHAT_LOGS = FORKCHAT_HOME / "logs"

DEFAULT_INSTRUCTIONS = (
    "You are a helpful, concise assistant. Keep responses brief and focused. "
    "Avoid lengthy explanations unless specifically asked for detail. "
    "Be direct and practical."
)


@dataclass
class GatewayConfig:
    """Completion API connection settings."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    request_timeout: float = 120.0  # Chained chat calls
    connect_timeout: float = 10.0
    instructions: str = DEFAULT_INSTRUCTIONS


@dataclass
class ModelConfig:
    """Model selection.

    Fast and deep chat share one model so response chaining keeps working
    across mode switches. Set `chat` to pin it explicitly:
        forkchat config models.chat=gpt-5-mini
    """

    chat: str = ""
    fast: str = ""
    deep: str = ""
    summarize: str = "gpt-5-nano"


@dataclass
class MergeConfig:
    """Branch merge behaviour."""

    skip_summarization_threshold: int = 10  # Turns at or below skip the LLM
    summarize_timeout: float = 30.0
    max_bullets: int = 5
    quick_summary_max_chars: int = 150


@dataclass
class StoreConfig:
    """Thread persistence settings."""

    db_path: str = str(FORKCHAT_DB)
    enabled: bool = True
    owner: str = "local"  # user or session id threads are stored under


@dataclass
class ForkchatConfig:
    """Top-level forkchat configuration."""

    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "ForkchatConfig":
        """Load config from disk or return defaults.

        OPENAI_* env vars override file config for credentials and models.
        """
        config = cls()
        config_path = path or FORKCHAT_CONFIG
        if config_path.exists():
            data = json.loads(config_path.read_text())
            if "gateway" in data:
                for k, v in data["gateway"].items():
                    setattr(config.gateway, k, v)
            if "models" in data:
                for k, v in data["models"].items():
                    setattr(config.models, k, v)
            if "merge" in data:
                for k, v in data["merge"].items():
                    setattr(config.merge, k, v)
            if "store" in data:
                for k, v in data["store"].items():
                    setattr(config.store, k, v)

        api_key = os.environ.get("OPENAI_API_KEY")
        base_url = os.environ.get("OPENAI_BASE_URL")
        if api_key:
            config.gateway.api_key = api_key
        if base_url:
            config.gateway.base_url = base_url

        chat_model = os.environ.get("OPENAI_MODEL_CHAT")
        fast_model = os.environ.get("OPENAI_MODEL_FAST")
        deep_model = os.environ.get("OPENAI_MODEL_DEEP")
        summarize_model = os.environ.get("OPENAI_MODEL_SUMMARIZE")

        if chat_model:
            config.models.chat = chat_model
        if fast_model:
            config.models.fast = fast_model
        if deep_model:
            config.models.deep = deep_model
        if summarize_model:
            config.models.summarize = summarize_model

        return config

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk."""
        config_path = path or FORKCHAT_CONFIG
        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "gateway": asdict(self.gateway),
            "models": asdict(self.models),
            "merge": asdict(self.merge),
            "store": asdict(self.store),
        }
        # Keys supplied by the environment stay out of the file
        if data["gateway"]["api_key"] == os.environ.get("OPENAI_API_KEY"):
            data["gateway"]["api_key"] = ""
        config_path.write_text(json.dumps(data, indent=2))


def ensure_forkchat_home() -> None:
    """Create forkchat home directory structure."""
    FORKCHAT_HOME.mkdir(parents=True, exist_ok=True)
    FORKCHAT_LOGS.mkdir(parents=True, exist_ok=True)
