from __future__ import annotations

import json
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urljoin
from urllib.request import Request, urlopen


class VendorApiError(RuntimeError):
    def __init__(self, *, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"vendor API error {status_code}: {detail}")


class VendorHttpClient:
    def __init__(self, *, base_url: str, timeout_seconds: float):
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout_seconds = timeout_seconds

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        bearer_token: str | None = None,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
    ) -> Any:
        status_code, body = self._request_raw(
            method,
            path,
            bearer_token=bearer_token,
            query=query,
            payload=payload,
        )
        if body.strip() == "":
            return {}
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise VendorApiError(status_code=status_code, detail=f"invalid JSON response: {exc}")

    def _request_raw(
        self,
        method: str,
        path: str,
        *,
        bearer_token: str | None = None,
        query: dict[str, Any] | None = None,
        payload: Any | None = None,
    ) -> tuple[int, str]:
        url = urljoin(self._base_url, path.lstrip("/"))
        if query:
            filtered = {k: v for k, v in query.items() if v is not None}
            if filtered:
                url = f"{url}?{urlencode(filtered, doseq=True)}"

        data_bytes: bytes | None = None
        headers: dict[str, str] = {"Accept": "application/json"}
        if payload is not None:
            data_bytes = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"

        request = Request(url=url, method=method.upper(), data=data_bytes, headers=headers)
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                body = response.read().decode("utf-8", errors="replace")
                return response.status, body
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise VendorApiError(status_code=exc.code, detail=detail or exc.reason)
        except URLError as exc:
            raise VendorApiError(status_code=503, detail=str(exc))
        except TimeoutError as exc:
            raise VendorApiError(status_code=504, detail=str(exc))
