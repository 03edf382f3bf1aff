"""
Классификация ошибок HTTP-вызовов к внешним системам.

Назначение:
- единое правило для провайдера бота, Google и Slack:
  403/404/410 -> SourceExpiredError (ресурс ушёл навсегда)
  таймаут / обрыв / 429 / 5xx -> TransientProviderError
  прочие 4xx -> ProviderError
"""

from __future__ import annotations

import requests

from .errors import ErrCode, ProviderError, SourceExpiredError, TransientProviderError

EXPIRED_STATUSES = frozenset({403, 404, 410})
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


def error_from_status(
    status_code: int,
    *,
    what: str,
    code: str = ErrCode.PROVIDER_ERROR,
    body: str | None = None,
) -> ProviderError:
    details = {"status_code": status_code, "target": what}
    if body:
        details["body"] = body[:300]
    if status_code in EXPIRED_STATUSES:
        return SourceExpiredError(f"{what}: ресурс недоступен или истёк (HTTP {status_code})", details)
    if status_code in RETRYABLE_STATUSES or status_code >= 500:
        return TransientProviderError(f"{what}: временная ошибка (HTTP {status_code})", details)
    return ProviderError(code, f"{what}: ошибка запроса (HTTP {status_code})", details)


def error_from_exception(
    e: requests.RequestException,
    *,
    what: str,
    code: str = ErrCode.PROVIDER_ERROR,
) -> ProviderError:
    """requests-исключение -> ошибка из нашей таксономии."""
    resp = getattr(e, "response", None)
    if resp is not None:
        return error_from_status(int(resp.status_code), what=what, code=code, body=resp.text)
    if isinstance(e, requests.Timeout):
        return TransientProviderError(
            f"{what}: таймаут (ссылка могла истечь)", {"target": what, "err": str(e)[:300]}
        )
    if isinstance(e, requests.ConnectionError):
        return TransientProviderError(
            f"{what}: ошибка соединения", {"target": what, "err": str(e)[:300]}
        )
    return ProviderError(code, f"{what}: ошибка запроса", {"target": what, "err": str(e)[:300]})


def raise_for_status(resp: requests.Response, *, what: str, code: str = ErrCode.PROVIDER_ERROR) -> None:
    if resp.status_code >= 400:
        raise error_from_status(int(resp.status_code), what=what, code=code, body=resp.text)
