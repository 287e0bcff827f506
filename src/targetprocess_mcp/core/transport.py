from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

from .errors import (
    APIError,
    ClientError,
    TargetProcessError,
    TargetProcessParseError,
    TransientAPIError,
)
from .observability import record_event


class Transport:
    """
    Single-shot HTTP access to the TargetProcess REST API.
    - Handles auth, base URL and the per-request timeout
    - Returns parsed JSON dicts; raises typed errors otherwise
    - No retries and no business logic; see RetryExecutor
    """

    def __init__(
        self,
        *,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        logger: Optional[logging.Logger] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        base_url = (base_url or "").rstrip("/")
        if not base_url:
            raise ValueError("base_url must be provided.")
        if not access_token and not (username and password):
            raise ValueError("username/password or access_token must be provided.")

        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.log = logger or logging.getLogger("targetprocess_mcp.transport")

        auth = httpx.BasicAuth(username, password) if username and password else None
        # token auth travels as a default query parameter on every request
        params = {"access_token": access_token} if access_token else None

        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=self.base_url,
            auth=auth,
            params=params,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def send(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        tool: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Issue exactly one request.
        - TransientAPIError for 5xx, connection failures and timeouts
        - ClientError for other non-2xx statuses
        - TargetProcessParseError if a 2xx body isn't a JSON object
        """
        method = method.upper()
        start = time.perf_counter()
        kwargs: Dict[str, Any] = {"params": params, "json": json}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            resp = await self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            self._log_failure(tool, method, url, start, exc)
            raise TransientAPIError(
                status_code=None,
                method=method,
                url=url,
                message=f"timeout: {exc}",
            ) from exc
        except httpx.TransportError as exc:
            self._log_failure(tool, method, url, start, exc)
            raise TransientAPIError(
                status_code=None,
                method=method,
                url=url,
                message=f"network error: {exc}",
            ) from exc
        except httpx.HTTPError as exc:
            self._log_failure(tool, method, url, start, exc)
            raise TargetProcessError(
                f"HTTPX error calling {method} {url}: {exc}"
            ) from exc

        duration_ms = int((time.perf_counter() - start) * 1000)
        self.log.debug(
            "tp.request",
            extra={
                "tool": tool,
                "method": method,
                "endpoint": url,
                "status": resp.status_code,
                "duration_ms": duration_ms,
            },
        )
        record_event(
            "tp_call",
            tool=tool,
            method=method,
            endpoint=url,
            status=resp.status_code,
            duration_ms=duration_ms,
        )

        if resp.status_code < 200 or resp.status_code >= 300:
            raise self._to_api_error(resp, method=method)

        return self._safe_json(resp)

    def _log_failure(
        self,
        tool: Optional[str],
        method: str,
        url: str,
        start: float,
        exc: BaseException,
    ) -> None:
        record_event(
            "tp_call",
            tool=tool,
            method=method,
            endpoint=url,
            status="exception",
            error_type=type(exc).__name__,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    def _safe_json(self, resp: httpx.Response) -> Dict[str, Any]:
        # 204 No Content and friends
        if not resp.content:
            return {}

        try:
            data = resp.json()
        except ValueError as exc:
            body = resp.text or ""
            raise TargetProcessParseError(
                f"Expected JSON from {resp.request.method} "
                f"{resp.request.url}, got non-JSON body snippet: "
                f"{body[:500]!r}",
                body=body,
                url=str(resp.request.url),
            ) from exc

        if not isinstance(data, dict):
            raise TargetProcessParseError(
                f"Expected top-level JSON object from "
                f"{resp.request.method} {resp.request.url}, "
                f"got {type(data).__name__}",
                body=resp.text or "",
                url=str(resp.request.url),
            )
        return data

    def _to_api_error(self, resp: httpx.Response, *, method: str) -> APIError:
        url = str(resp.request.url)
        response_json: Optional[Dict[str, Any]] = None
        response_text: Optional[str] = None
        message = resp.reason_phrase or "request failed"

        try:
            parsed = resp.json()
            if isinstance(parsed, dict):
                response_json = parsed
                message = (
                    parsed.get("Message")
                    or parsed.get("ErrorMessage")
                    or parsed.get("Description")
                    or message
                )
        except ValueError:
            response_text = (resp.text or "")[:500]

        error_cls = TransientAPIError if resp.status_code >= 500 else ClientError
        return error_cls(
            status_code=resp.status_code,
            method=method,
            url=url,
            message=str(message),
            response_json=response_json,
            response_text=response_text,
        )


__all__ = ["Transport"]
