"""Configuration loader for Archivist.

Loads archivist.toml, applies environment variable overrides for secrets,
validates required fields, and provides typed access to all settings.
Immutable after load — no runtime config reloading.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from models import MAX_CONTENT_LEVEL, MIN_CONTENT_LEVEL, Persona

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "ARCHIVIST_ANTHROPIC_KEY": ("api_keys", "anthropic"),
    "ARCHIVIST_OPENAI_KEY": ("api_keys", "openai"),
    "ARCHIVIST_GEMINI_KEY": ("api_keys", "gemini"),
}

# Provider type → api_keys entry
_PROVIDER_KEYS = {
    "anthropic-compat": "anthropic",
    "openai-compat": "openai",
    "gemini-compat": "gemini",
}


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from archivist.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                if section not in self._data:
                    self._data[section] = {}
                self._data[section][key] = val

    def _validate(self):
        errors = []
        if not _deep_get(self._data, "session", "owner"):
            errors.append("[session] owner is required")

        personas = self._data.get("personas", [])
        if not personas:
            errors.append("at least one [[personas]] entry is required")
        else:
            ids = set()
            for i, p in enumerate(personas):
                if not p.get("id"):
                    errors.append(f"[[personas]] #{i + 1}: id is required")
                elif p["id"] in ids:
                    errors.append(f"[[personas]] duplicate id {p['id']!r}")
                else:
                    ids.add(p["id"])
                if not (p.get("display_name") or p.get("name")):
                    errors.append(f"[[personas]] #{i + 1}: display_name is required")
                level = p.get("content_level", 1)
                if not isinstance(level, int) or not MIN_CONTENT_LEVEL <= level <= MAX_CONTENT_LEVEL:
                    errors.append(f"[[personas]] #{i + 1}: content_level must be 1-5")
            primaries = [p for p in personas if p.get("is_primary", p.get("primary", False))]
            if len(primaries) != 1:
                errors.append(
                    f"exactly one persona must have is_primary = true (found {len(primaries)})")

        primary = _deep_get(self._data, "models", "primary", default={})
        if not primary:
            errors.append("[models.primary] section is required")
        else:
            if not primary.get("provider"):
                errors.append("[models.primary] provider is required")
            elif primary["provider"] not in _PROVIDER_KEYS:
                errors.append(f"[models.primary] unknown provider {primary['provider']!r}")
            if not primary.get("model"):
                errors.append("[models.primary] model is required")

        dialogue_p = _deep_get(self._data, "idle", "dialogue_probability", default=0.3)
        banter_p = _deep_get(self._data, "behavior", "banter_probability", default=0.45)
        for name, value in (("[idle] dialogue_probability", dialogue_p),
                            ("[behavior] banter_probability", banter_p)):
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be between 0 and 1")

        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Session ---

    @property
    def owner(self) -> str:
        return self._data["session"]["owner"]

    @property
    def personas(self) -> list[Persona]:
        return [Persona.from_dict(p) for p in self._data.get("personas", [])]

    @property
    def runtime_patches(self) -> dict[str, str]:
        """Operator directives per persona id, from [patches]."""
        patches = self._data.get("patches", {})
        return {k: v for k, v in patches.items() if isinstance(v, str) and v.strip()}

    # --- Models ---

    def model_config(self, name: str) -> dict:
        cfg = _deep_get(self._data, "models", name)
        if not cfg:
            raise ConfigError(f"No model config for '{name}'")
        return dict(cfg)

    def has_model(self, name: str) -> bool:
        return bool(_deep_get(self._data, "models", name))

    def model_api_key(self, name: str) -> str:
        cfg = self.model_config(name)
        env_name = cfg.get("api_key_env", "")
        if env_name:
            return os.environ.get(env_name, "")
        return self.api_key(_PROVIDER_KEYS.get(cfg.get("provider", ""), ""))

    # --- Behavior ---

    @property
    def max_tool_rounds(self) -> int:
        return int(_deep_get(self._data, "behavior", "max_tool_rounds", default=8))

    @property
    def banter_probability(self) -> float:
        return float(_deep_get(self._data, "behavior", "banter_probability", default=0.45))

    @property
    def banter_delay(self) -> float:
        return float(_deep_get(self._data, "behavior", "banter_delay_seconds", default=1.2))

    @property
    def banter_max_tokens(self) -> int:
        return int(_deep_get(self._data, "behavior", "banter_max_tokens", default=100))

    @property
    def command_sentinel(self) -> str:
        return _deep_get(self._data, "behavior", "command_sentinel", default="/gigi")

    @property
    def api_timeout(self) -> float:
        return float(_deep_get(self._data, "behavior", "api_timeout_seconds", default=600))

    # --- Retry ---

    @property
    def retry_max_attempts(self) -> int:
        return int(_deep_get(self._data, "retry", "max_attempts", default=5))

    @property
    def retry_base_delay(self) -> float:
        return float(_deep_get(self._data, "retry", "base_delay", default=2.0))

    @property
    def retry_max_jitter(self) -> float:
        return float(_deep_get(self._data, "retry", "max_jitter", default=1.0))

    # --- Idle ---

    @property
    def daydreaming(self) -> bool:
        return bool(_deep_get(self._data, "idle", "daydreaming", default=True))

    @property
    def idle_timeout(self) -> float:
        return float(_deep_get(self._data, "idle", "idle_timeout_minutes", default=5)) * 60

    @property
    def away_delay(self) -> float:
        return float(_deep_get(self._data, "idle", "away_delay_seconds", default=10))

    @property
    def daydream_interval(self) -> float:
        return float(_deep_get(self._data, "idle", "daydream_interval_minutes", default=5)) * 60

    @property
    def dialogue_probability(self) -> float:
        return float(_deep_get(self._data, "idle", "dialogue_probability", default=0.3))

    # --- Paths ---

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def archive_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "archive_dir",
                                       default="~/.archivist/archive"))

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.archivist/archivist.log"))

    # --- API Keys ---

    def api_key(self, provider: str) -> str:
        return _deep_get(self._data, "api_keys", provider, default="")

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _deep_get(self._data, *keys, default=default)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as archivist.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Environment takes precedence
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to archivist.toml.
        overrides: Dotted-key overrides applied to the raw TOML data before
                   validation (e.g. {"idle.daydreaming": False}).
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    _load_dotenv(p)
    with open(p, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {p}: {e}") from e
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, config_dir=p.parent)
