import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

CONFIG_DIR_KEY = "BROKER_CONFIG_DIR"
STATE_DB_KEY = "BROKER_STATE_DB"
TRUST_MODE_KEY = "PLUGIN_TRUST_MODE"
ENCRYPTION_KEY_KEY = "ENCRYPTION_KEY"
DEFAULT_TIMEOUT_KEY = "SECURE_HTTP_DEFAULT_TIMEOUT_MS"
MAX_BODY_CHARS_KEY = "SECURE_HTTP_MAX_BODY_CHARS"
GITHUB_APP_ID_KEY = "GITHUB_APP_ID"
GITHUB_PRIVATE_KEY_KEY = "GITHUB_APP_PRIVATE_KEY"
GITHUB_API_BASE_KEY = "GITHUB_API_BASE"
GITHUB_PRESET_KEY = "GITHUB_PERMISSION_PRESET"
GITHUB_TOKEN_TTL_KEY = "GITHUB_TOKEN_TTL_SEC"
CRASH_THRESHOLD_KEY = "PLUGIN_CRASH_THRESHOLD"
CRASH_WINDOW_KEY = "PLUGIN_CRASH_WINDOW_SEC"
LOCAL_API_KEYS_KEY = "LOCAL_API_KEYS"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "agent-broker"

TRUST_MODE_SELF_HOST_OPEN = "self_host_open"
TRUST_MODE_SELF_HOST_GUARDED = "self_host_guarded"
TRUST_MODE_SAAS_LOCKED = "saas_locked"
TRUST_MODES = (TRUST_MODE_SELF_HOST_OPEN, TRUST_MODE_SELF_HOST_GUARDED, TRUST_MODE_SAAS_LOCKED)
DEFAULT_TRUST_MODE = TRUST_MODE_SELF_HOST_GUARDED

MAX_TIMEOUT_MS = 30_000
DEFAULT_MAX_BODY_CHARS = 50_000
DEFAULT_GITHUB_API_BASE = "https://api.github.com"


@dataclass(frozen=True)
class BrokerConfig:
    config_dir: Path
    state_db_path: Path
    trust_mode: str = DEFAULT_TRUST_MODE
    encryption_key: Optional[str] = None
    request_timeout_ms: int = MAX_TIMEOUT_MS
    max_timeout_ms: int = MAX_TIMEOUT_MS
    max_response_body_chars: int = DEFAULT_MAX_BODY_CHARS
    github_app_id: Optional[str] = None
    github_private_key: Optional[str] = field(default=None, repr=False)
    github_api_base: str = DEFAULT_GITHUB_API_BASE
    github_permission_preset: str = "unset"
    github_token_ttl_sec: int = 3600
    crash_threshold: int = 5
    crash_window_sec: int = 300
    local_api_keys: Dict[str, List[str]] = field(default_factory=dict, repr=False)


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip()
    except OSError as exc:
        logger.warning("Failed to read %s: %s", path, exc)
    return data


def get_env_value(key: str, env_file: Mapping[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def apply_env_defaults(env_file: Mapping[str, str], target_env: Optional[Dict[str, str]] = None) -> int:
    """Populate missing process env vars from a .env-style mapping.

    Existing environment values are never overwritten.
    Returns the number of keys applied.
    """
    target = target_env if target_env is not None else os.environ  # type: ignore[assignment]
    applied = 0
    for raw_key, raw_value in (env_file or {}).items():
        key = str(raw_key or "").strip()
        if not key:
            continue
        if key in target and str(target.get(key) or "").strip():
            continue
        target[key] = str(raw_value or "")
        applied += 1
    return applied


def get_env_path(config_dir: Path) -> Path:
    return config_dir / ".env"


def resolve_trust_mode(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    if value in TRUST_MODES:
        return value
    if value:
        logger.warning("Unknown %s=%r; falling back to %s", TRUST_MODE_KEY, raw, DEFAULT_TRUST_MODE)
    return DEFAULT_TRUST_MODE


def parse_local_api_keys(raw: Optional[str]) -> Dict[str, List[str]]:
    """Parse ``token:scope,scope;token2:scope`` into a token -> scopes map."""
    out: Dict[str, List[str]] = {}
    for item in (raw or "").split(";"):
        item = item.strip()
        if not item or ":" not in item:
            continue
        token, scopes_raw = item.split(":", 1)
        token = token.strip()
        scopes = [s.strip() for s in scopes_raw.split(",") if s.strip()]
        if token and scopes:
            out[token] = scopes
    return out


def _read_int(key: str, env_file: Mapping[str, str], default: int, minimum: int = 1) -> int:
    raw = get_env_value(key, env_file)
    if raw is None or not str(raw).strip():
        return default
    try:
        return max(minimum, int(str(raw).strip()))
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", key, raw)
        return default


def _read_private_key(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    value = raw.strip()
    candidate = Path(value).expanduser()
    if not value.startswith("-----") and candidate.is_file():
        return candidate.read_text(encoding="utf-8")
    # .env files carry PEM bodies with escaped newlines
    return value.replace("\\n", "\n")


def load_config(config_dir: Optional[Path] = None) -> BrokerConfig:
    base = config_dir or Path(os.environ.get(CONFIG_DIR_KEY) or DEFAULT_CONFIG_DIR)
    base = Path(base).expanduser().resolve()
    env_file = load_env_file(get_env_path(base))

    state_db_raw = get_env_value(STATE_DB_KEY, env_file)
    state_db_path = Path(state_db_raw).expanduser() if state_db_raw else base / "state.db"

    default_timeout = min(_read_int(DEFAULT_TIMEOUT_KEY, env_file, MAX_TIMEOUT_MS), MAX_TIMEOUT_MS)

    return BrokerConfig(
        config_dir=base,
        state_db_path=state_db_path,
        trust_mode=resolve_trust_mode(get_env_value(TRUST_MODE_KEY, env_file)),
        encryption_key=get_env_value(ENCRYPTION_KEY_KEY, env_file) or None,
        request_timeout_ms=default_timeout,
        max_timeout_ms=MAX_TIMEOUT_MS,
        max_response_body_chars=_read_int(MAX_BODY_CHARS_KEY, env_file, DEFAULT_MAX_BODY_CHARS, minimum=100),
        github_app_id=get_env_value(GITHUB_APP_ID_KEY, env_file) or None,
        github_private_key=_read_private_key(get_env_value(GITHUB_PRIVATE_KEY_KEY, env_file)),
        github_api_base=(get_env_value(GITHUB_API_BASE_KEY, env_file) or DEFAULT_GITHUB_API_BASE).rstrip("/"),
        github_permission_preset=(get_env_value(GITHUB_PRESET_KEY, env_file) or "unset").strip(),
        github_token_ttl_sec=_read_int(GITHUB_TOKEN_TTL_KEY, env_file, 3600, minimum=60),
        crash_threshold=_read_int(CRASH_THRESHOLD_KEY, env_file, 5),
        crash_window_sec=_read_int(CRASH_WINDOW_KEY, env_file, 300),
        local_api_keys=parse_local_api_keys(get_env_value(LOCAL_API_KEYS_KEY, env_file)),
    )


def describe_config(config: BrokerConfig) -> List[str]:
    """Human-readable summary lines; never includes secret material."""
    return [
        f"Config dir: {config.config_dir}",
        f"Env file: {get_env_path(config.config_dir)}",
        f"State DB: {config.state_db_path}",
        f"Trust mode: {config.trust_mode}",
        f"Secrets encrypted at rest: {'yes' if config.encryption_key else 'no'}",
        f"Default request timeout: {config.request_timeout_ms}ms",
        f"GitHub App configured: {'yes' if config.github_app_id and config.github_private_key else 'no'}",
        f"GitHub permission preset: {config.github_permission_preset}",
        f"Admin API keys: {len(config.local_api_keys)}",
    ]
