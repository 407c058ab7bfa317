"""External HTTP calls with authentication, transient-fault retries and response mapping."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from ..contracts import (
    ExecutionOptions,
    StepContext,
    StepDefinition,
    WorkerResult,
    WorkerType,
)
from ..exceptions import ConfigurationError, ExecutionError, ValidationError
from ..persistence.models import StepInstance
from ..templating import MISSING, lookup, render, resolve_secret
from ..utils.retry import compute_backoff
from .base import WorkerHandler, elapsed_ms

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
AUTH_TYPES = ("bearer", "basic", "api_key", "oauth2")


class ExternalWorker(WorkerHandler):
    """Executes ``config``-described HTTP requests through ``httpx``.

    Transport errors and retryable statuses are retried inside the handler
    up to ``retry.max_attempts``; whatever survives is returned as a
    network-flavored :class:`ExecutionError` so the step-level retry manager
    can take over.
    """

    worker_type = WorkerType.EXTERNAL

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        request_timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._sleep = sleep
        self._request_timeout = request_timeout
        self._token_cache: Dict[Tuple[str, str, str], Tuple[str, float]] = {}

    def validate_step(self, step: StepDefinition) -> None:
        if not step.config.get("url"):
            raise ConfigurationError(f"External step {step.sequence} requires a 'url'")
        auth = step.config.get("auth")
        if auth and auth.get("type") not in AUTH_TYPES:
            raise ConfigurationError(
                f"Unknown auth type {auth.get('type')!r} in step {step.sequence}"
            )

    async def execute(
        self, step: StepInstance, context: StepContext, options: ExecutionOptions
    ) -> WorkerResult:
        started = time.monotonic()
        config = render(step.config, context.template_scope())
        retry = config.get("retry", {})
        max_attempts = max(1, int(retry.get("max_attempts", 3)))
        info: Dict[str, Any] = {"url": config.get("url"), "method": config.get("method", "GET")}

        if self._client is not None:
            result = await self._run(self._client, step, config, options, max_attempts, retry, info)
        else:
            async with httpx.AsyncClient(timeout=self._request_timeout) as client:
                result = await self._run(client, step, config, options, max_attempts, retry, info)
        result.duration_ms = elapsed_ms(started)
        return result

    async def _run(
        self,
        client: httpx.AsyncClient,
        step: StepInstance,
        config: Dict[str, Any],
        options: ExecutionOptions,
        max_attempts: int,
        retry: Dict[str, Any],
        info: Dict[str, Any],
    ) -> WorkerResult:
        try:
            request = await self._build_request(client, step, config, options)
        except (ConfigurationError, ExecutionError) as exc:
            return WorkerResult.failure(exc, **info)

        last_error: Optional[ExecutionError] = None
        for attempt in range(1, max_attempts + 1):
            info["http_attempts"] = attempt
            try:
                response = await client.send(request)
            except httpx.HTTPError as exc:
                last_error = ExecutionError(
                    f"Request to {request.url} failed: {exc}", network=True
                )
            else:
                info["status_code"] = response.status_code
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    return self._handle_response(response, config, info)
                last_error = ExecutionError(
                    f"Request to {request.url} returned {response.status_code}",
                    {"status_code": response.status_code},
                    network=True,
                )
            if attempt < max_attempts:
                delay = compute_backoff(
                    attempt,
                    base=float(retry.get("base_delay", 0.5)),
                    cap=float(retry.get("max_delay", 10.0)),
                )
                logger.warning(
                    f"{last_error.message}; retrying in {delay:.2f}s "
                    f"({attempt}/{max_attempts})"
                )
                await self._sleep(delay)
        return WorkerResult.failure(last_error, **info)

    async def _build_request(
        self,
        client: httpx.AsyncClient,
        step: StepInstance,
        config: Dict[str, Any],
        options: ExecutionOptions,
    ) -> httpx.Request:
        url = config.get("url")
        if not url:
            raise ConfigurationError(f"External step {step.sequence} requires a 'url'")
        headers = {str(k): str(resolve_secret(v)) for k, v in config.get("headers", {}).items()}
        params = dict(config.get("params", {}))
        headers["Idempotency-Key"] = options.idempotency_key or f"{step.run_id}:{step.sequence}"

        auth = config.get("auth")
        if auth:
            await self._apply_auth(client, auth, headers, params)

        body = config.get("body")
        return client.build_request(
            config.get("method", "GET").upper(),
            url,
            headers=headers,
            params=params or None,
            json=body if body is not None else None,
            timeout=float(config.get("timeout", self._request_timeout)),
        )

    async def _apply_auth(
        self,
        client: httpx.AsyncClient,
        auth: Dict[str, Any],
        headers: Dict[str, str],
        params: Dict[str, Any],
    ) -> None:
        kind = auth.get("type")
        if kind == "bearer":
            headers["Authorization"] = f"Bearer {resolve_secret(auth.get('token', ''))}"
        elif kind == "basic":
            username = resolve_secret(auth.get("username", ""))
            password = resolve_secret(auth.get("password", ""))
            credentials = base64.b64encode(f"{username}:{password}".encode("utf-8"))
            headers["Authorization"] = f"Basic {credentials.decode('ascii')}"
        elif kind == "api_key":
            name = auth.get("name", "X-API-Key")
            value = str(resolve_secret(auth.get("key", "")))
            if auth.get("location", "header") == "query":
                params[name] = value
            else:
                headers[name] = value
        elif kind == "oauth2":
            token = await self._oauth2_token(client, auth)
            headers["Authorization"] = f"Bearer {token}"
        else:
            raise ConfigurationError(f"Unknown auth type {kind!r}")

    async def _oauth2_token(self, client: httpx.AsyncClient, auth: Dict[str, Any]) -> str:
        token_url = auth.get("token_url")
        client_id = str(resolve_secret(auth.get("client_id", "")))
        scope = auth.get("scope", "")
        if not token_url:
            raise ConfigurationError("oauth2 auth requires a 'token_url'")
        cache_key = (token_url, client_id, scope)
        cached = self._token_cache.get(cache_key)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": str(resolve_secret(auth.get("client_secret", ""))),
        }
        if scope:
            data["scope"] = scope
        try:
            response = await client.post(token_url, data=data)
        except httpx.HTTPError as exc:
            raise ExecutionError(f"Token request failed: {exc}", network=True) from exc
        if response.status_code != 200:
            raise ExecutionError(
                f"Token request returned {response.status_code}",
                {"status_code": response.status_code},
                network=response.status_code in RETRYABLE_STATUS_CODES,
            )
        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise ExecutionError("Token response has no access_token")
        # refresh a little before the server-side expiry
        expires_in = float(payload.get("expires_in", 3600))
        self._token_cache[cache_key] = (token, time.monotonic() + max(0.0, expires_in - 30))
        return token

    def _handle_response(
        self, response: httpx.Response, config: Dict[str, Any], info: Dict[str, Any]
    ) -> WorkerResult:
        try:
            body: Any = response.json()
        except ValueError:
            body = {"text": response.text}
        document = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": body,
        }

        rules = config.get("validation", {})
        allowed = rules.get("status_codes")
        if allowed is None:
            ok = 200 <= response.status_code < 300
        else:
            ok = response.status_code in allowed
        if not ok:
            return WorkerResult.failure(
                ExecutionError(
                    f"Unexpected status code {response.status_code}",
                    {"status_code": response.status_code, "body": body},
                ),
                **info,
            )
        problems = self._validate(body, rules)
        if problems:
            return WorkerResult.failure(
                ValidationError("Response validation failed", {"problems": problems}),
                **info,
            )

        mapping = config.get("field_mapping")
        if mapping:
            output = {}
            for field, path in mapping.items():
                value = lookup(document, path)
                output[field] = None if value is MISSING else value
        else:
            output = {"status_code": response.status_code, "body": body}
        return WorkerResult(success=True, output_data=output, worker_info=info)

    @staticmethod
    def _validate(body: Any, rules: Dict[str, Any]) -> List[str]:
        problems = []
        for field in rules.get("required_fields", []):
            if lookup(body, field) is MISSING:
                problems.append(f"missing field {field}")
        for field, expected in rules.get("field_equals", {}).items():
            actual = lookup(body, field)
            if actual != expected:
                problems.append(f"{field} is {actual!r}, expected {expected!r}")
        return problems
