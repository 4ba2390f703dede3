"""Chat client configuration: layered defaults, env interpolation, redaction.

Provides:
- Built-in defaults deep-merged with caller overrides
- {env:VAR} interpolation with allowlist enforcement
- Validation into a frozen ChatConfig
- Redaction for safe logging (never leak the publishable key)

The chat endpoint lives under the Supabase functions URL:
  {SUPABASE_URL}/functions/v1/chat-stream
authorized with the project's publishable key as a bearer token.
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger("mama.config_loader")

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULT_CHAT_PATH = "/functions/v1/chat-stream"

# Core allowlist for env var interpolation
_CORE_ENV_PATTERNS = [
    re.compile(r"^MAMA_"),
    re.compile(r"^SUPABASE_URL$"),
    re.compile(r"^SUPABASE_PUBLISHABLE_KEY$"),
]

# Regex for interpolation tokens: {env:VAR}
_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

# Patterns that indicate sensitive keys (for redaction)
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "chat": {
        "base_url": "{env:SUPABASE_URL}",
        "api_key": "{env:SUPABASE_PUBLISHABLE_KEY}",
        "chat_path": DEFAULT_CHAT_PATH,
        "connect_timeout_ms": 5000,
        "read_timeout_ms": 60000,
        "default_patient_id": 1,
    },
}


class ConfigError(ValueError):
    """Invalid or unresolvable chat configuration."""


@dataclass(frozen=True)
class ChatConfig:
    """Resolved chat client configuration."""

    base_url: str
    api_key: str
    chat_path: str = DEFAULT_CHAT_PATH
    connect_timeout_ms: int = 5000
    read_timeout_ms: int = 60000
    default_patient_id: int = 1

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.chat_path}"


# ── Env allowlist ─────────────────────────────────────────────────────


def _check_env_allowed(
    var_name: str, extra_patterns: List[re.Pattern] = ()
) -> bool:
    """Check if env var name is in the allowlist."""
    for pattern in _CORE_ENV_PATTERNS:
        if pattern.search(var_name):
            return True
    for pattern in extra_patterns:
        if pattern.search(var_name):
            return True
    return False


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(
    value: str,
    extra_env_patterns: List[re.Pattern] = (),
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    """Resolve {env:VAR_NAME} tokens in a string value."""
    env = os.environ if environ is None else environ

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _check_env_allowed(var_name, extra_env_patterns):
            raise ConfigError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^MAMA_.*, ^SUPABASE_URL$, ^SUPABASE_PUBLISHABLE_KEY$"
            )
        val = env.get(var_name)
        if val is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(
    config: Dict[str, Any],
    extra_env_patterns: List[re.Pattern] = (),
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Recursively interpolate all string values in a config dict.

    Returns a new dict with resolved values.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, str) and _INTERP_RE.search(value):
            result[key] = interpolate_value(value, extra_env_patterns, environ)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value, extra_env_patterns, environ)
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ── Validation ────────────────────────────────────────────────────────


def validate_chat_section(chat: Dict[str, Any]) -> List[str]:
    """Validate a resolved "chat" config section.

    Returns list of error strings (empty = valid).
    """
    errors = []

    base_url = chat.get("base_url")
    if not base_url:
        errors.append("Chat 'base_url' is required")
    elif not str(base_url).startswith(("http://", "https://")):
        errors.append(f"Chat 'base_url' must be an http(s) URL, got '{base_url}'")

    if not chat.get("api_key"):
        errors.append("Chat 'api_key' is required")

    chat_path = chat.get("chat_path", DEFAULT_CHAT_PATH)
    if not str(chat_path).startswith("/"):
        errors.append(f"Chat 'chat_path' must start with '/', got '{chat_path}'")

    for field_name in ("connect_timeout_ms", "read_timeout_ms", "default_patient_id"):
        value = chat.get(field_name)
        if value is None:
            continue
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"Chat '{field_name}' must be an integer, got {value!r}")
            continue
        if number <= 0:
            errors.append(f"Chat '{field_name}' must be positive, got {number}")

    return errors


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    extra_env_patterns: List[re.Pattern] = (),
) -> ChatConfig:
    """Build a ChatConfig from defaults, overrides and the environment.

    Raises ConfigError on unresolvable tokens or invalid values.
    """
    merged = deep_merge(DEFAULT_CONFIG, overrides or {})
    resolved = interpolate_config(merged, extra_env_patterns, environ)
    chat = resolved.get("chat", {})

    errors = validate_chat_section(chat)
    if errors:
        raise ConfigError("Invalid chat config: " + "; ".join(errors))

    config = ChatConfig(
        base_url=str(chat["base_url"]),
        api_key=str(chat["api_key"]),
        chat_path=str(chat.get("chat_path", DEFAULT_CHAT_PATH)),
        connect_timeout_ms=int(chat.get("connect_timeout_ms", 5000)),
        read_timeout_ms=int(chat.get("read_timeout_ms", 60000)),
        default_patient_id=int(chat.get("default_patient_id", 1)),
    )
    logger.debug("Loaded chat config: %s", redact_config(merged))
    return config


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging.

    Values sourced from {env:} show '***REDACTED***'.
    Keys matching sensitive patterns are also redacted.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif isinstance(value, str) and _INTERP_RE.search(value):
            sources = _INTERP_RE.findall(value)
            annotations = ", ".join(f"env:{name}" for name in sources)
            result[key] = f"{REDACTED} (from {annotations})"
        elif _SENSITIVE_KEY_RE.search(key):
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted
