"""
Утилиты безопасности и авторизации.

Поддерживаемые режимы (AUTH_MODE):
- api_key: проверка X-API-Key (management API)
- none: без авторизации (ТОЛЬКО dev)

Вебхуки: если задан WEBHOOK_SECRET, требуем заголовок X-Webhook-Secret.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from .config import get_settings
from .errors import UnauthorizedError


def _parse_api_keys(raw: str) -> set[str]:
    """
    Разбор строки API_KEYS из ENV в множество.
    """
    return {k.strip() for k in (raw or "").split(",") if k.strip()}


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


@dataclass(frozen=True)
class AuthContext:
    subject: str
    auth_type: str


def require_auth(*, x_api_key: str | None) -> AuthContext:
    settings = get_settings()
    mode = (settings.auth_mode or "api_key").lower().strip()

    if mode == "none":
        if _is_prod_env(settings.app_env):
            raise UnauthorizedError("AUTH_MODE=none запрещён в APP_ENV=prod")
        return AuthContext(subject="anonymous", auth_type="none")

    if mode != "api_key":
        raise UnauthorizedError("Неизвестный режим авторизации")

    keys = _parse_api_keys(settings.api_keys)
    if not x_api_key or not any(hmac.compare_digest(x_api_key, k) for k in keys):
        raise UnauthorizedError("Неверный API ключ")
    return AuthContext(subject="service", auth_type="api_key")


def require_webhook_secret(*, provided: str | None) -> None:
    secret = (get_settings().webhook_secret or "").strip()
    if not secret:
        return
    if not provided or not hmac.compare_digest(provided, secret):
        raise UnauthorizedError("Неверный секрет вебхука")
