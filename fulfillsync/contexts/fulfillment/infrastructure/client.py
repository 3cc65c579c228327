from __future__ import annotations

import json
import ssl
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Callable, Mapping


class FulfillmentClientError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class FulfillmentHttpClient:
    """JSON over HTTPS against the merchant API, bearer-token authenticated."""

    def __init__(
        self,
        base_url: str,
        *,
        token_provider: Callable[[], str | None],
        timeout_seconds: int = 20,
        retry_attempts: int = 2,
        retry_backoff_ms: int = 300,
        verify_ssl: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not str(base_url or "").strip():
            raise FulfillmentClientError("FFN_BASE_URL is not configured.")
        self.base_url = str(base_url).rstrip("/")
        self._token_provider = token_provider
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_backoff_ms = max(0, int(retry_backoff_ms))
        self.verify_ssl = bool(verify_ssl)
        self._sleep = sleep

    def url_for(self, path: str, query: Mapping[str, object] | None = None) -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        params = {key: value for key, value in (query or {}).items() if value not in (None, "")}
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        return url

    def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: dict | None = None,
        query: Mapping[str, object] | None = None,
        headers: Mapping[str, str] | None = None,
        allow_retry: bool = False,
    ) -> object:
        attempts = self.retry_attempts if allow_retry else 1
        request_headers = {"Accept": "application/json"}
        token = self._token_provider()
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        request_headers.update(headers or {})

        data = None
        if payload is not None:
            request_headers["Content-Type"] = "application/json"
            data = json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("utf-8")

        request = urllib.request.Request(self.url_for(path, query), data=data, headers=request_headers, method=method.upper())

        context = None
        if not self.verify_ssl:
            context = ssl._create_unverified_context()

        for attempt in range(attempts):
            try:
                with urllib.request.urlopen(request, timeout=self.timeout_seconds, context=context) as response:
                    body = response.read().decode("utf-8")
                    if not body:
                        return {}
                    return json.loads(body)
            except urllib.error.HTTPError as exc:  # noqa: PERF203
                error_body = exc.read().decode("utf-8") if exc.fp else ""
                should_retry = attempt < attempts - 1 and (exc.code >= 500 or exc.code in {408, 429})
                if should_retry:
                    self._sleep(self.retry_backoff_ms * (attempt + 1) / 1000)
                    continue
                raise FulfillmentClientError(f"FFN HTTP {exc.code}: {error_body[:200]}", status=exc.code) from exc
            except urllib.error.URLError as exc:
                if attempt < attempts - 1:
                    self._sleep(self.retry_backoff_ms * (attempt + 1) / 1000)
                    continue
                raise FulfillmentClientError(f"FFN connection error: {exc.reason}") from exc
            except json.JSONDecodeError as exc:
                raise FulfillmentClientError("FFN returned invalid JSON.") from exc

        raise FulfillmentClientError("FFN request failed.")
