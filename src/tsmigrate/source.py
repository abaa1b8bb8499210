from __future__ import annotations

from typing import Dict, List, Optional
from urllib.parse import unquote_plus

import httpx
from loguru import logger

from .coordinator.types import Record, TimeWindow
from .errors import SourceClientError, SourceServerError

SOURCE_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class SourceClient:
    """Synchronous client for the source time-series query API.

    One GET per (tag, window). The response body is a JSON array of flat
    objects; each object becomes one Record with its non-null values
    rendered as strings.
    """

    def __init__(
        self,
        api_url: str,
        *,
        user_key: str = "",
        user_key_param: str = "userKey",
        extra_params: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url
        self._user_key = user_key
        self._user_key_param = user_key_param
        self._extra_params = dict(extra_params or {})
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.Client] = None) -> "SourceClient":
        src = settings.source
        return cls(
            src.api_url,
            user_key=src.user_key,
            user_key_param=src.user_key_param,
            extra_params=src.extra_params,
            timeout=src.request_timeout_sec,
            client=client,
        )

    def params(self, tag: str, window: TimeWindow) -> Dict[str, str]:
        params = dict(self._extra_params)
        params["stime"] = window.start.strftime(SOURCE_TIME_FORMAT)
        params["etime"] = window.end.strftime(SOURCE_TIME_FORMAT)
        params["tags"] = tag
        if self._user_key:
            params[self._user_key_param] = self._user_key
        return params

    def query(self, tag: str, window: TimeWindow) -> List[Record]:
        resp = self._client.get(self.api_url, params=self.params(tag, window))
        url = unquote_plus(str(resp.request.url))
        if self._user_key:
            url = url.replace(self._user_key, "***")

        if 400 <= resp.status_code < 500:
            raise SourceClientError(
                f"HTTP {resp.status_code} for {url}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 500:
            raise SourceServerError(
                f"HTTP {resp.status_code} for {url}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise SourceServerError(
                f"malformed response body for {url}: {e}", status_code=resp.status_code
            ) from e
        if not isinstance(body, list):
            raise SourceServerError(
                f"expected a JSON array from {url}, got {type(body).__name__}",
                status_code=resp.status_code,
            )

        records: List[Record] = []
        for row in body:
            if not isinstance(row, dict):
                raise SourceServerError(
                    f"expected JSON objects from {url}, got {type(row).__name__}",
                    status_code=resp.status_code,
                )
            records.append(
                Record(tag, {str(k): str(v) for k, v in row.items() if v is not None})
            )
        logger.debug(f"Source returned {len(records)} points for tag {tag} {window}")
        return records

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SourceClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
