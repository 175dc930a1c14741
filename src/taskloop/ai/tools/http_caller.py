"""Outbound HTTP tool restricted to safe methods and allowed domains."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlsplit

import httpx

from taskloop.ai.tools.base import Tool
from taskloop.config import HttpCallerConfig
from taskloop.errors import ToolAuthorizationError, ToolExecutionError
from taskloop.log import get_logger

logger = get_logger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH")
MAX_RESPONSE_CHARS = 4000


class HttpCallerTool(Tool):
    def __init__(self, config: HttpCallerConfig, transport: httpx.AsyncBaseTransport | None = None):
        self._allowed_domains = [domain.lower().strip(".") for domain in config.allowed_domains if domain]
        self._timeout = httpx.Timeout(config.read_timeout, connect=config.connect_timeout)
        self._transport = transport

    @property
    def name(self) -> str:
        return "call_api"

    @property
    def description(self) -> str:
        return (
            "Make an HTTP request to an external REST API (GET, POST, PUT or PATCH). "
            "Use it to fetch data from services such as weather, GitHub or issue trackers. "
            "Include any authentication headers the API needs."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "Full URL, e.g. https://api.github.com/repos/owner/repo",
                },
                "method": {
                    "type": "string",
                    "enum": list(ALLOWED_METHODS),
                    "description": "HTTP method. Default: GET",
                },
                "headers": {
                    "type": "object",
                    "description": "Request headers as key-value pairs",
                    "additionalProperties": {"type": "string"},
                },
                "body": {
                    "type": "string",
                    "description": "Request body as a JSON string (POST/PUT/PATCH)",
                },
            },
            "required": ["url"],
        }

    def check_url(self, url: str) -> str:
        """Return the host of *url* or raise if the URL may not be called."""
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ToolExecutionError(f"Invalid URL: {url}")
        host = parts.hostname.lower()
        if self._allowed_domains and not any(
            host == domain or host.endswith("." + domain) for domain in self._allowed_domains
        ):
            raise ToolAuthorizationError(
                f"Domain '{host}' is not in the allowed list. Allowed: {self._allowed_domains}"
            )
        return host

    async def execute(self, **kwargs: Any) -> str:
        url = kwargs.get("url")
        method = str(kwargs.get("method") or "GET").upper()
        if not isinstance(url, str) or not url.strip():
            raise ToolExecutionError("'url' is required")
        if method not in ALLOWED_METHODS:
            raise ToolAuthorizationError(f"Method '{method}' is not allowed. Use: {list(ALLOWED_METHODS)}")
        url = url.strip()
        host = self.check_url(url)

        headers = kwargs.get("headers")
        headers = {str(k): str(v) for k, v in headers.items()} if isinstance(headers, dict) else {}
        body = kwargs.get("body")
        content = None
        if method != "GET" and isinstance(body, str) and body.strip():
            content = body.encode("utf-8")
            headers.setdefault("Content-Type", "application/json")

        logger.info("api_call", method=method, host=host)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as exc:
            raise ToolExecutionError(f"API call timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise ToolExecutionError(f"API call failed: {exc}") from exc

        logger.info("api_response", status=response.status_code, body_length=len(response.text))
        return f"HTTP {response.status_code}\n\n{_format_body(response.text)}"


def _format_body(text: str) -> str:
    if not text:
        return "(empty response)"
    try:
        formatted = json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except ValueError:
        formatted = text
    if len(formatted) > MAX_RESPONSE_CHARS:
        remaining = len(formatted) - MAX_RESPONSE_CHARS
        formatted = formatted[:MAX_RESPONSE_CHARS] + f"\n... [truncated, {remaining} more chars]"
    return formatted
