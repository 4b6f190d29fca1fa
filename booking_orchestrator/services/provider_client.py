"""
Shared HTTP plumbing for external provider adapters (PayPal, DocuSeal, Resend).

- Every call carries a timeout (ADAPTER_TIMEOUT_SECONDS)
- Responses are classified through ERROR_MAP into retryable / non-retryable
  adapter errors, which the retry engine turns into reschedule / dead-letter
- No sleeping retries here; retries belong to the caller
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..exceptions import NonRetryableAdapterError, RetryableAdapterError

logger = logging.getLogger(__name__)


@dataclass
class ProviderErrorInfo:
    """Structured classification of a provider HTTP status"""
    code: str
    message: str
    status_code: int
    retryable: bool = False


ERROR_MAP = {
    400: ProviderErrorInfo("bad_request", "Request rejected by provider", 400, False),
    401: ProviderErrorInfo("unauthorized", "Invalid or missing credentials", 401, False),
    403: ProviderErrorInfo("forbidden", "Access denied to this resource", 403, False),
    404: ProviderErrorInfo("not_found", "Resource not found", 404, False),
    408: ProviderErrorInfo("request_timeout", "Provider timed out the request", 408, True),
    409: ProviderErrorInfo("conflict", "Conflicting request", 409, False),
    422: ProviderErrorInfo("validation_error", "Invalid request data", 422, False),
    425: ProviderErrorInfo("too_early", "Provider asked to retry later", 425, True),
    429: ProviderErrorInfo("rate_limited", "Too many requests", 429, True),
    500: ProviderErrorInfo("server_error", "Provider server error", 500, True),
    502: ProviderErrorInfo("bad_gateway", "Provider gateway error", 502, True),
    503: ProviderErrorInfo("service_unavailable", "Provider service unavailable", 503, True),
    504: ProviderErrorInfo("gateway_timeout", "Provider gateway timeout", 504, True),
}


def classify_status(status_code: int) -> ProviderErrorInfo:
    if status_code in ERROR_MAP:
        return ERROR_MAP[status_code]
    if status_code >= 500:
        return ProviderErrorInfo("server_error", "Provider server error", status_code, True)
    return ProviderErrorInfo("client_error", "Provider rejected the request", status_code, False)


class BaseProviderClient:
    provider = "provider"

    def __init__(self, base_url: str, timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.adapter_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def _request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[Any] = None,
        auth: Optional[tuple] = None,
    ) -> Dict[str, Any]:
        """
        Perform one HTTP call and return the decoded JSON body.

        Raises RetryableAdapterError for timeouts, transport errors and
        retryable statuses; NonRetryableAdapterError otherwise.
        """
        url = f"{self.base_url}{endpoint}"
        request_headers = self._headers()
        if headers:
            request_headers.update(headers)

        start_time = time.time()
        try:
            with self._client() as client:
                response = client.request(
                    method,
                    url,
                    json=json_body,
                    data=data,
                    headers=request_headers,
                    auth=auth,
                )
        except httpx.TimeoutException as e:
            logger.warning(f"{self.provider} {method} {endpoint} timed out: {e}")
            raise RetryableAdapterError(self.provider, f"timeout calling {endpoint}")
        except httpx.TransportError as e:
            logger.warning(f"{self.provider} {method} {endpoint} transport error: {e}")
            raise RetryableAdapterError(self.provider, f"connection error calling {endpoint}: {e}")

        duration_ms = int((time.time() - start_time) * 1000)
        status_code = response.status_code

        if 200 <= status_code < 300:
            logger.debug(f"{self.provider} {method} {endpoint} -> {status_code} ({duration_ms}ms)")
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                raise NonRetryableAdapterError(
                    self.provider, f"invalid JSON from {endpoint}", status_code=status_code
                )

        error = classify_status(status_code)
        body_preview = response.text[:500]
        logger.warning(
            f"{self.provider} {method} {endpoint} -> {status_code} "
            f"({error.code}, retryable={error.retryable}, {duration_ms}ms): {body_preview}"
        )
        message = f"{error.message} ({status_code}) on {endpoint}"
        if error.retryable:
            raise RetryableAdapterError(self.provider, message, status_code=status_code)
        raise NonRetryableAdapterError(self.provider, message, status_code=status_code)
