"""Credentialed outbound HTTP on behalf of an agent.

The agent never sees the secret: it places ``{alias}`` where the secret
belongs and the executor performs lookup, host and location policy checks,
interpolation, dispatch, response redaction and auditing.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from agent_broker.config import DEFAULT_MAX_BODY_CHARS, MAX_TIMEOUT_MS
from agent_broker.domain.audit import (
    CAPABILITY_CREDENTIAL_HTTP_REQUEST,
    EVENT_CREDENTIAL_REQUEST_ALLOWED,
    EVENT_CREDENTIAL_REQUEST_DENIED,
    EVENT_CREDENTIAL_REQUEST_FAIL,
    EVENT_CREDENTIAL_REQUEST_SUCCESS,
    RESULT_ALLOWED,
    RESULT_DENIED,
    RESULT_ERROR,
)
from agent_broker.domain.credentials import CredentialForUse
from agent_broker.errors import NetworkError, PolicyDenied, RequestTimeout, ValidationError
from agent_broker.observability.structured_log import log_json
from agent_broker.services.audit_log import AuditLog
from agent_broker.services.credential_store import CredentialStore
from agent_broker.services.host_policy import HostPolicyMatcher, normalize_host
from agent_broker.services.secret_interpolation import SecretInterpolationEngine, location_label, placeholder_for
from agent_broker.transport import build_httpx_client
from agent_broker.util import REDACTED_SECRET, redact_secret, truncate_text

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
MAX_REDIRECTS = 5

REASON_NOT_ASSIGNED = "credential_not_assigned_or_disabled"
REASON_HOST_NOT_ALLOWED = "host_not_allowed"
REASON_LOCATION_NOT_ALLOWED = "secret_location_not_allowed"
REASON_PLACEHOLDER_NOT_USED = "placeholder_not_used"


@dataclass
class SecureHttpRequest:
    agent_id: str
    credential_alias: str
    url: str
    method: str = "GET"
    headers: Optional[Dict[str, Any]] = None
    query: Optional[Dict[str, Any]] = None
    body_json: Optional[Any] = None
    body_text: Optional[str] = None
    timeout_ms: Optional[int] = None


@dataclass
class SecureHttpResponse:
    status: int
    status_text: str
    url: str
    headers: Dict[str, str]
    body: str
    truncated: bool
    duration_ms: int
    http_ok: bool
    usage: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "statusText": self.status_text,
            "url": self.url,
            "headers": dict(self.headers),
            "body": self.body,
            "truncated": self.truncated,
            "durationMs": self.duration_ms,
            "httpOk": self.http_ok,
            "usage": dict(self.usage),
        }


@dataclass(frozen=True)
class _ValidatedRequest:
    agent_id: str
    alias: str
    method: str
    url: httpx.URL
    host: str
    headers: Dict[str, str]
    query: List[Tuple[str, str]]
    body_json: Optional[Dict[str, Any]]
    body_text: Optional[str]
    timeout_ms: int


def _render_query_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def _is_ascii(text: str) -> bool:
    try:
        text.encode("ascii")
    except UnicodeEncodeError:
        return False
    return True


def clamp_timeout_ms(raw: Any, default_ms: int = MAX_TIMEOUT_MS, max_ms: int = MAX_TIMEOUT_MS) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return min(default_ms, max_ms)
    return max(1, min(max_ms, int(raw)))


def validate_request(request: SecureHttpRequest, default_timeout_ms: int, max_timeout_ms: int) -> _ValidatedRequest:
    """Reject malformed input before any credential lookup."""
    method = (request.method or "GET").strip().upper()
    if method not in ALLOWED_METHODS:
        raise ValidationError("method must be one of GET, POST, PUT, PATCH, DELETE.")
    agent_id = (request.agent_id or "").strip()
    if not agent_id:
        raise ValidationError("Missing agent identity for secure_http_request.")
    alias = (request.credential_alias or "").strip()
    if not alias:
        raise ValidationError("credential_alias is required.")
    raw_url = (request.url or "").strip()
    if not raw_url:
        raise ValidationError("url is required.")
    try:
        url = httpx.URL(raw_url)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise ValidationError("url must be a valid absolute URL.") from exc
    if url.scheme not in ("http", "https"):
        raise ValidationError("Only http and https URLs are supported.")
    host = normalize_host(url.host)
    if not host:
        raise ValidationError("url must be a valid absolute URL.")
    if request.body_json is not None and request.body_text is not None:
        raise ValidationError("Provide either body_json or body_text, not both.")
    if request.body_json is not None and not isinstance(request.body_json, dict):
        raise ValidationError("body_json must be an object.")
    if request.body_text is not None and not isinstance(request.body_text, str):
        raise ValidationError("body_text must be a string.")
    if request.headers is not None and not isinstance(request.headers, dict):
        raise ValidationError("headers must be an object.")
    if request.query is not None and not isinstance(request.query, dict):
        raise ValidationError("query must be an object.")

    headers = {str(k): v for k, v in (request.headers or {}).items() if isinstance(v, str)}
    for name, value in headers.items():
        if not _is_ascii(name) or not _is_ascii(value):
            raise ValidationError(f'Header "{name}" must contain only ASCII characters.')
    if request.body_json is not None and not any(k.lower() == "content-type" for k in headers):
        headers["Content-Type"] = "application/json"

    provided: Dict[str, str] = {}
    for key, value in (request.query or {}).items():
        rendered = _render_query_value(value)
        if rendered is not None:
            provided[str(key)] = rendered
    # Caller-supplied params replace same-named params already present in the URL.
    query = [(k, v) for k, v in url.params.multi_items() if k not in provided]
    query.extend(provided.items())

    return _ValidatedRequest(
        agent_id=agent_id,
        alias=alias,
        method=method,
        url=url.copy_with(query=None, fragment=None),
        host=host,
        headers=headers,
        query=query,
        body_json=request.body_json,
        body_text=request.body_text,
        timeout_ms=clamp_timeout_ms(request.timeout_ms, default_timeout_ms, max_timeout_ms),
    )


def redact_url(url: httpx.URL, secret: str) -> str:
    """Replace query values containing the secret wholesale, then scrub any remaining occurrence."""
    pairs = [(k, REDACTED_SECRET if secret and secret in v else v) for k, v in url.params.multi_items()]
    cleaned = url.copy_with(params=pairs) if pairs else url
    return redact_secret(str(cleaned), secret)


class SecureHttpRequestExecutor:
    def __init__(
        self,
        credentials: CredentialStore,
        audit: AuditLog,
        client: Optional[httpx.AsyncClient] = None,
        host_matcher: Optional[HostPolicyMatcher] = None,
        interpolation: Optional[SecretInterpolationEngine] = None,
        default_timeout_ms: int = MAX_TIMEOUT_MS,
        max_timeout_ms: int = MAX_TIMEOUT_MS,
        max_body_chars: int = DEFAULT_MAX_BODY_CHARS,
    ):
        self._credentials = credentials
        self._audit = audit
        self._client = client
        self._hosts = host_matcher or HostPolicyMatcher()
        self._interpolation = interpolation or SecretInterpolationEngine()
        self._max_timeout_ms = max(1, min(MAX_TIMEOUT_MS, int(max_timeout_ms)))
        self._default_timeout_ms = max(1, min(self._max_timeout_ms, int(default_timeout_ms)))
        self._max_body_chars = max(1, int(max_body_chars))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = build_httpx_client(read_timeout_sec=self._max_timeout_ms / 1000.0)
        return self._client

    async def execute(self, request: SecureHttpRequest) -> SecureHttpResponse:
        started = time.monotonic()
        req = validate_request(request, self._default_timeout_ms, self._max_timeout_ms)
        base_meta: Dict[str, Any] = {
            "credentialAlias": req.alias,
            "method": req.method,
            "host": req.host,
            "path": req.url.path,
        }

        credential = self._credentials.resolve_for_use(req.agent_id, req.alias)
        if credential is None:
            raise self._deny(
                req,
                None,
                REASON_NOT_ASSIGNED,
                f'Credential "{req.alias}" is not assigned or not enabled.',
                base_meta,
            )
        record = credential.record
        meta = dict(base_meta, credentialId=record.credential_id, credentialAlias=record.alias)

        if not self._hosts.matches(req.host, record.allowed_hosts):
            raise self._deny(
                req,
                credential,
                REASON_HOST_NOT_ALLOWED,
                f'Host "{req.host}" is not allowed for credential "{record.alias}".',
                dict(meta, allowedHosts=list(record.allowed_hosts)),
            )

        interpolated = self._interpolation.interpolate(
            alias=record.alias,
            secret=credential.secret,
            headers=req.headers,
            query=req.query,
            body_text=req.body_text,
            body_json=req.body_json,
        )
        violations = self._interpolation.check_locations(
            interpolated,
            allowed_in_header=record.allowed_in_header,
            allowed_in_query=record.allowed_in_query,
            allowed_in_body=record.allowed_in_body,
        )
        if violations:
            raise self._deny(
                req,
                credential,
                REASON_LOCATION_NOT_ALLOWED,
                f'Credential "{record.alias}" is not allowed in {location_label(violations[0])}.',
                dict(meta, disallowedLocations=violations),
            )
        if not interpolated.used_anywhere:
            placeholder = placeholder_for(record.alias)
            raise self._deny(
                req,
                credential,
                REASON_PLACEHOLDER_NOT_USED,
                f"No {placeholder} placeholder found in headers, query, or body. "
                f"Use {placeholder} where the secret should be placed.",
                meta,
            )

        # Pre-dispatch allow is written strictly: no unaudited secret use leaves the process.
        self._audit.record(
            event_type=EVENT_CREDENTIAL_REQUEST_ALLOWED,
            agent_id=req.agent_id,
            result=RESULT_ALLOWED,
            capability=CAPABILITY_CREDENTIAL_HTTP_REQUEST,
            metadata=dict(
                meta,
                secretInHeader=interpolated.secret_in_header,
                secretInQuery=interpolated.secret_in_query,
                secretInBody=interpolated.secret_in_body,
            ),
            resource_id=record.credential_id,
            secrets=[credential.secret],
        )

        outbound_url = req.url.copy_with(params=interpolated.query) if interpolated.query else req.url
        try:
            response = await asyncio.wait_for(
                self._dispatch(
                    req.method,
                    outbound_url,
                    interpolated.headers,
                    interpolated.body,
                    record.allowed_hosts,
                    req.timeout_ms,
                ),
                timeout=req.timeout_ms / 1000.0,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            elapsed = _elapsed_ms(started)
            self._record_failure(req, credential, meta, elapsed, timed_out=True, error=str(exc) or "timeout")
            raise RequestTimeout(f"Request timed out after {req.timeout_ms}ms.", elapsed_ms=elapsed) from exc
        except httpx.HTTPError as exc:
            elapsed = _elapsed_ms(started)
            message = redact_secret(str(exc) or type(exc).__name__, credential.secret)
            self._record_failure(req, credential, meta, elapsed, timed_out=False, error=message)
            raise NetworkError(message, reason="network_error") from exc
        except Exception as exc:
            elapsed = _elapsed_ms(started)
            message = redact_secret(f"Request failed: {type(exc).__name__}", credential.secret)
            self._record_failure(req, credential, meta, elapsed, timed_out=False, error=message)
            raise NetworkError(message, reason="network_error") from exc

        headers = {k: redact_secret(v, credential.secret) for k, v in response.headers.items()}
        body_text, truncated, omitted = truncate_text(
            redact_secret(response.text, credential.secret), self._max_body_chars
        )
        final_url = redact_url(response.url, credential.secret)
        duration = _elapsed_ms(started)

        self._audit.record_best_effort(
            event_type=EVENT_CREDENTIAL_REQUEST_SUCCESS,
            agent_id=req.agent_id,
            result=RESULT_ALLOWED,
            capability=CAPABILITY_CREDENTIAL_HTTP_REQUEST,
            metadata=dict(meta, status=response.status_code, durationMs=duration, truncated=truncated),
            resource_id=record.credential_id,
            secrets=[credential.secret],
        )
        log_json(
            logger,
            "secure_http.completed",
            agent_id=req.agent_id,
            alias=record.alias,
            host=req.host,
            path=req.url.path,
            status=response.status_code,
            duration_ms=duration,
            truncated=truncated,
            omitted_chars=omitted,
        )
        return SecureHttpResponse(
            status=response.status_code,
            status_text=response.reason_phrase,
            url=final_url,
            headers=headers,
            body=body_text,
            truncated=truncated,
            duration_ms=duration,
            http_ok=response.is_success,
            usage={
                "provider": record.provider,
                "operation": "secure_http_request",
                "creditsUsed": 0,
                "costUsd": 0,
                "durationMs": duration,
                "metadata": {
                    "credentialId": record.credential_id,
                    "credentialAlias": record.alias,
                    "host": req.host,
                    "method": req.method,
                    "status": response.status_code,
                },
            },
        )

    async def _dispatch(
        self,
        method: str,
        url: httpx.URL,
        headers: Dict[str, str],
        body: Optional[str],
        allowed_hosts: List[str],
        timeout_ms: int,
    ) -> httpx.Response:
        client = self._get_client()
        request = client.build_request(
            method,
            url,
            headers=headers,
            content=body.encode("utf-8") if body is not None else None,
            timeout=timeout_ms / 1000.0,
        )
        response = await client.send(request, follow_redirects=False)
        hops = 0
        while response.next_request is not None and hops < MAX_REDIRECTS:
            next_request = response.next_request
            if not self._hosts.matches(next_request.url.host, allowed_hosts):
                logger.warning(
                    "Not following redirect to %s: host is outside the credential allow-list.",
                    normalize_host(next_request.url.host),
                )
                break
            await response.aread()
            await response.aclose()
            response = await client.send(next_request, follow_redirects=False)
            hops += 1
        await response.aread()
        return response

    def _deny(
        self,
        req: _ValidatedRequest,
        credential: Optional[CredentialForUse],
        reason: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> PolicyDenied:
        error = PolicyDenied(message, reason=reason)
        self._audit.record_best_effort(
            event_type=EVENT_CREDENTIAL_REQUEST_DENIED,
            agent_id=req.agent_id,
            result=RESULT_DENIED,
            capability=CAPABILITY_CREDENTIAL_HTTP_REQUEST,
            metadata=dict(metadata, reason=reason),
            resource_id=credential.record.credential_id if credential else None,
            secrets=[credential.secret] if credential else (),
        )
        log_json(
            logger,
            "secure_http.denied",
            level="warning",
            agent_id=req.agent_id,
            alias=req.alias,
            host=req.host,
            path=req.url.path,
            reason=reason,
        )
        return error

    def _record_failure(
        self,
        req: _ValidatedRequest,
        credential: CredentialForUse,
        meta: Dict[str, Any],
        elapsed_ms: int,
        timed_out: bool,
        error: str,
    ) -> None:
        self._audit.record_best_effort(
            event_type=EVENT_CREDENTIAL_REQUEST_FAIL,
            agent_id=req.agent_id,
            result=RESULT_ERROR,
            capability=CAPABILITY_CREDENTIAL_HTTP_REQUEST,
            metadata=dict(meta, timedOut=timed_out, durationMs=elapsed_ms, error=error),
            resource_id=credential.record.credential_id,
            secrets=[credential.secret],
        )
        log_json(
            logger,
            "secure_http.failed",
            level="warning",
            agent_id=req.agent_id,
            alias=credential.record.alias,
            host=req.host,
            timed_out=timed_out,
            duration_ms=elapsed_ms,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
