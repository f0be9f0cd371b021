from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig

_INSECURE_JOB_TOKEN_SECRET = "dev-insecure-job-token-secret"


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)


def _is_production_env() -> bool:
    env = str(os.environ.get("ENV") or os.environ.get("APP_ENV") or "").strip().lower()
    return env in {"prod", "production"}


def _strict_secrets() -> bool:
    return bool(int(os.environ.get("STRICT_SECRETS", "0") or "0"))


def _secret_value(secret: SecretStr | None) -> str:
    try:
        return secret.get_secret_value() if secret else ""
    except Exception:
        return ""


def _is_strong_secret(value: str) -> bool:
    v = str(value or "")
    if len(v) < 24:
        return False
    classes = sum(
        [
            any(c.islower() for c in v),
            any(c.isupper() for c in v),
            any(c.isdigit() for c in v),
            any(not c.isalnum() for c in v),
        ]
    )
    if len(v) >= 32 and classes >= 2:
        return True
    return classes >= 3


def _validate(s: Settings) -> None:
    """
    Hard-fail only in production or when STRICT_SECRETS=1; warn otherwise.
    """
    prod = _is_production_env()
    weak: list[str] = []

    token_secret = _secret_value(s.secret.job_token_secret)
    if token_secret == _INSECURE_JOB_TOKEN_SECRET:
        weak.append("JOB_TOKEN_SECRET")
    elif prod and not _is_strong_secret(token_secret):
        weak.append("JOB_TOKEN_SECRET")

    backend = str(s.public.store_backend or "").strip().lower()
    if backend not in {"memory", "sqlite", "redis"}:
        raise ConfigError(f"Unknown STORE_BACKEND={backend!r} (expected memory|sqlite|redis)")
    if backend == "redis" and not s.secret.redis_url:
        raise ConfigError("STORE_BACKEND=redis requires REDIS_URL")

    if int(s.public.queue_soft_limit) > int(s.public.queue_hard_limit):
        raise ConfigError("QUEUE_SOFT_LIMIT must not exceed QUEUE_HARD_LIMIT")

    if weak:
        if prod or _strict_secrets():
            names = ", ".join(sorted(set(weak)))
            raise ConfigError(f"Weak or default secrets: {names}. Set them in the environment or `.env.secrets`.")
        logging.getLogger("videotext_pipeline").warning(
            "weak_secrets_detected",
            extra={"weak": sorted(set(weak)), "strict_secrets": False, "production": prod},
        )


def _set_marker(v: Any) -> str:
    if isinstance(v, SecretStr):
        v = v.get_secret_value()
    return "SET" if v is not None and str(v).strip() else "UNSET"


def get_safe_config_report() -> dict[str, Any]:
    """
    Config as JSON-safe data for `videotext show-config`.

    Secret fields appear only as SET/UNSET; their values never leave this function.
    """
    s = get_settings()
    public = {k: (str(v) if isinstance(v, os.PathLike) else v) for k, v in s.public.model_dump().items()}
    secrets = {k: _set_marker(getattr(s.secret, k, None)) for k in sorted(type(s.secret).model_fields)}
    return {
        "strict_secrets": _strict_secrets(),
        "public": public,
        "secrets": secrets,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate(s)
    return s
