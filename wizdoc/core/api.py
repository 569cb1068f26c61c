"""Typed JSON transport to the WizDoc AI service.

:class:`RemoteAPIClient` issues exactly one round trip per call and classifies
the outcome into the :class:`~wizdoc.core.errors.TransportError` family. It
never retries; retry policy belongs to the pipeline.

Usage::

    async with RemoteAPIClient.from_config(ApiConfig.from_dict(cfg)) as api:
        health = await api.get("/health")
        result = await api.post("/analyze", {"transcript": text}, decode=AnalysisResult.from_dict)
"""

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx
from loguru import logger

from .config import API_BASE_URL, API_TIMEOUT, DEFAULT_MODEL, DEFAULT_PROMPT, ENDPOINTS
from .errors import BadResponse, ConnectionFailed, DecodeFailure

T = TypeVar("T")


@dataclass
class ApiConfig:
    """Connection settings for the remote AI service."""

    base_url: str = API_BASE_URL
    timeout: float = API_TIMEOUT
    headers: Dict[str, str] = field(default_factory=dict)
    endpoints: Dict[str, str] = field(default_factory=lambda: dict(ENDPOINTS))
    prompt: str = DEFAULT_PROMPT
    model: str = DEFAULT_MODEL

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiConfig":
        """Build and validate API config from mapping."""
        base_url = str(data.get("base_url") or "")
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"api.base_url must be an http(s) URL, got {base_url!r}")

        endpoints = dict(ENDPOINTS)
        endpoints.update({str(k): str(v) for k, v in (data.get("endpoints") or {}).items()})
        return cls(
            base_url=base_url,
            timeout=float(data.get("timeout", API_TIMEOUT)),
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            endpoints=endpoints,
            prompt=str(data.get("prompt", DEFAULT_PROMPT)),
            model=str(data.get("model", DEFAULT_MODEL)),
        )

    def endpoint(self, name: str) -> str:
        """Return the configured path for endpoint *name*."""
        try:
            return self.endpoints[name]
        except KeyError:
            raise ValueError(f"No endpoint configured for {name!r}") from None


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(body: Any) -> bytes:
    """Serialise *body* with sorted keys and compact separators."""
    if dataclasses.is_dataclass(body) and not isinstance(body, type):
        body = dataclasses.asdict(body)
    return json.dumps(
        body,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    ).encode("utf-8")


class RemoteAPIClient:
    """Async GET/POST with JSON bodies and typed decoding."""

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        timeout: float = API_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Scheme and host of the service; paths are appended
            timeout: Per-request timeout in seconds
            headers: Extra headers sent with every request
            client: Pre-built ``httpx.AsyncClient`` (tests inject a mock transport)
        """
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config: ApiConfig, client: Optional[httpx.AsyncClient] = None) -> "RemoteAPIClient":
        return cls(
            base_url=config.base_url,
            timeout=config.timeout,
            headers=config.headers,
            client=client,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def url_for(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def get(self, path: str, decode: Optional[Callable[[Any], T]] = None) -> T:
        """GET *path* and decode the JSON response."""
        return await self._request("GET", path, decode=decode)

    async def post(self, path: str, body: Any, decode: Optional[Callable[[Any], T]] = None) -> T:
        """POST *body* as canonical JSON to *path* and decode the response."""
        return await self._request("POST", path, content=canonical_json(body), decode=decode)

    async def _request(
        self,
        method: str,
        path: str,
        content: Optional[bytes] = None,
        decode: Optional[Callable[[Any], T]] = None,
    ) -> T:
        url = self.url_for(path)
        headers = {"Accept": "application/json", **self._headers}
        if content is not None:
            headers["Content-Type"] = "application/json"

        logger.debug(f"{method} {url}")
        try:
            response = await self._client.request(method, url, content=content, headers=headers)
        except httpx.TransportError as error:
            logger.warning(f"{method} {url} failed: {error!r}")
            raise ConnectionFailed(f"{method} {path}: {error}") from error

        if not 200 <= response.status_code < 300:
            logger.warning(f"{method} {url} returned HTTP {response.status_code}")
            raise BadResponse(response.status_code, response.text[:500])

        try:
            data = response.json()
        except ValueError as error:
            raise DecodeFailure(f"{method} {path}: response is not JSON") from error

        if decode is None:
            return data
        try:
            return decode(data)
        except (KeyError, TypeError, ValueError) as error:
            raise DecodeFailure(f"{method} {path}: unexpected response shape ({error})") from error

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RemoteAPIClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
