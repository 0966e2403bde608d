"""
Paynow hosted-payment gateway client.

Speaks Paynow's form-encoded protocol over ``httpx.AsyncClient``: initiate a
transaction to obtain the hosted page and poll URLs, poll a transaction's
status, and parse/verify the status updates Paynow posts back. Every request
has a bounded timeout; transient connection failures are retried with
exponential backoff.

Message integrity uses Paynow's scheme: SHA-512 over the concatenated field
values (in the order sent, excluding ``hash``) followed by the integration
key, as upper-case hex.
"""

import asyncio
import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

import httpx

from marketplace.core.config import Settings, get_settings
from marketplace.core.logging import get_logger, log_performance

logger = get_logger(__name__)

SUCCESS_STATUSES = frozenset({"paid", "awaiting delivery", "delivered"})
INTERMEDIATE_STATUSES = frozenset({"created", "sent"})
FAILURE_STATUSES = frozenset({"cancelled", "failed", "disputed", "refunded"})


class GatewayError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


class GatewayNotConfiguredError(GatewayError):
    """Raised when the gateway is used without integration credentials."""

    pass


class GatewayTimeoutError(GatewayError):
    """Raised when the gateway does not answer within the bounded wait."""

    pass


class GatewayConnectionError(GatewayError):
    """Raised when the gateway cannot be reached after retries."""

    pass


class GatewaySignatureError(GatewayError):
    """Raised when a gateway message hash does not match."""

    pass


class GatewayInitiationError(GatewayError):
    """Raised when the gateway refuses to start a transaction."""

    pass


@dataclass(frozen=True)
class GatewayInitiation:
    redirect_url: str
    poll_url: str


@dataclass(frozen=True)
class GatewayStatus:
    """A transaction status as reported by a poll or a callback."""

    reference: str
    status: str
    external_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    poll_url: Optional[str] = None
    raw: Mapping[str, str] = field(default_factory=dict)

    @property
    def normalized_status(self) -> str:
        return self.status.strip().lower()

    @property
    def paid(self) -> bool:
        return self.normalized_status in SUCCESS_STATUSES

    @property
    def is_intermediate(self) -> bool:
        return self.normalized_status in INTERMEDIATE_STATUSES

    @property
    def failed(self) -> bool:
        return self.normalized_status in FAILURE_STATUSES


def compute_hash(fields: Mapping[str, Any], integration_key: str) -> str:
    """Paynow message hash over ``fields`` in insertion order."""
    payload = "".join(
        str(value) for name, value in fields.items() if name.lower() != "hash"
    )
    return hashlib.sha512((payload + integration_key).encode("utf-8")).hexdigest().upper()


def verify_hash(fields: Mapping[str, Any], integration_key: str) -> bool:
    received = str(fields.get("hash", ""))
    if not received:
        return False
    expected = compute_hash(fields, integration_key)
    return hmac.compare_digest(received.upper(), expected)


def _to_status(fields: Mapping[str, str]) -> GatewayStatus:
    amount = fields.get("amount")
    return GatewayStatus(
        reference=fields.get("reference", ""),
        status=fields.get("status", ""),
        external_reference=fields.get("paynowreference") or None,
        amount=Decimal(amount) if amount else None,
        poll_url=fields.get("pollurl") or None,
        raw=dict(fields),
    )


class PaynowGateway:
    """
    Paynow client with bounded timeouts and retry on connection errors.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 4.0,
    ):
        self.settings = settings or get_settings()
        self.integration_id = self.settings.paynow_integration_id
        self.integration_key = self.settings.paynow_integration_key
        self.timeout = self.settings.gateway_timeout_seconds
        self.max_retries = self.settings.gateway_max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._client = client
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return bool(self.integration_id and self.integration_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _require_enabled(self) -> str:
        if not self.enabled:
            raise GatewayNotConfiguredError(
                "Payment gateway is not configured", code="GATEWAY_NOT_CONFIGURED"
            )
        return self.integration_key  # type: ignore[return-value]

    def _calculate_backoff(self, attempt: int) -> float:
        return min(self.initial_backoff * (2**attempt), self.max_backoff)

    async def _post_form(
        self, operation: str, url: str, data: Optional[dict[str, str]] = None
    ) -> dict[str, str]:
        """
        POST a form and parse the form-encoded reply.

        Raises:
            GatewayTimeoutError: If a request exceeds the bounded wait
            GatewayConnectionError: If the gateway stays unreachable or
                answers with an HTTP error
        """
        client = self._get_client()

        for attempt in range(self.max_retries + 1):
            try:
                response = await client.post(url, data=data or {}, timeout=self.timeout)
                response.raise_for_status()
                return dict(parse_qsl(response.text, keep_blank_values=True))
            except httpx.TimeoutException as e:
                logger.warning(
                    "Gateway request timed out",
                    operation=operation,
                    timeout_seconds=self.timeout,
                )
                raise GatewayTimeoutError(
                    f"Gateway {operation} timed out after {self.timeout}s",
                    code="GATEWAY_TIMEOUT",
                    operation=operation,
                ) from e
            except httpx.HTTPStatusError as e:
                logger.error(
                    "Gateway returned HTTP error",
                    operation=operation,
                    status_code=e.response.status_code,
                )
                raise GatewayConnectionError(
                    f"Gateway {operation} failed with HTTP {e.response.status_code}",
                    code="GATEWAY_HTTP_ERROR",
                    operation=operation,
                    status_code=e.response.status_code,
                ) from e
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Gateway unreachable after retries",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise GatewayConnectionError(
                        f"Gateway {operation} failed: {e}",
                        code="GATEWAY_UNREACHABLE",
                        operation=operation,
                    ) from e

                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Gateway connection error, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        raise GatewayConnectionError(f"Gateway {operation} failed", operation=operation)

    async def initiate(
        self,
        reference: str,
        payer_email: str,
        amount: Decimal,
        description: str,
    ) -> GatewayInitiation:
        """
        Start a hosted-page transaction.

        Returns:
            The buyer redirect URL and the poll URL for later status checks

        Raises:
            GatewayInitiationError: If the gateway rejects the request or
                its reply fails hash verification
            GatewayTimeoutError, GatewayConnectionError: On transport failure
        """
        key = self._require_enabled()
        fields: dict[str, str] = {
            "id": str(self.integration_id),
            "reference": reference,
            "amount": f"{Decimal(amount):.2f}",
            "additionalinfo": description,
            "returnurl": self.settings.paynow_return_url,
            "resulturl": self.settings.paynow_result_url,
            "authemail": payer_email,
            "status": "Message",
        }
        fields["hash"] = compute_hash(fields, key)

        with log_performance(logger, "gateway_initiate", reference=reference):
            reply = await self._post_form("initiate", self.settings.paynow_initiate_url, fields)

        if reply.get("status", "").lower() != "ok":
            error = reply.get("error", "unknown error")
            logger.error("Gateway rejected transaction", reference=reference, error=error)
            raise GatewayInitiationError(
                f"Gateway rejected transaction: {error}",
                code="GATEWAY_REJECTED",
                reference=reference,
            )

        if not verify_hash(reply, key):
            logger.error("Gateway initiation reply failed hash check", reference=reference)
            raise GatewayInitiationError(
                "Gateway reply failed hash verification",
                code="GATEWAY_BAD_HASH",
                reference=reference,
            )

        return GatewayInitiation(
            redirect_url=reply.get("browserurl", ""),
            poll_url=reply.get("pollurl", ""),
        )

    async def poll(self, poll_url: str) -> GatewayStatus:
        """
        Ask the gateway for a transaction's current status.

        Raises:
            GatewayTimeoutError, GatewayConnectionError: On transport failure
            GatewaySignatureError: If the reply fails hash verification
        """
        key = self._require_enabled()

        with log_performance(logger, "gateway_poll"):
            reply = await self._post_form("poll", poll_url)

        if not verify_hash(reply, key):
            logger.error("Gateway poll reply failed hash check", reference=reply.get("reference"))
            raise GatewaySignatureError(
                "Gateway poll reply failed hash verification",
                code="GATEWAY_BAD_HASH",
            )
        return _to_status(reply)

    def parse_callback(self, fields: Mapping[str, str]) -> GatewayStatus:
        """
        Parse and authenticate a status update posted by the gateway.

        Raises:
            GatewayNotConfiguredError: If no integration credentials are set;
                an unconfigured gateway accepts no callbacks
            GatewaySignatureError: If the hash is missing or wrong
        """
        if not self.enabled:
            logger.warning(
                "Gateway callback rejected: gateway not configured",
                reference=fields.get("reference"),
            )
            raise GatewayNotConfiguredError(
                "Payment gateway is not configured", code="GATEWAY_NOT_CONFIGURED"
            )
        if not verify_hash(fields, self.integration_key):
            logger.warning(
                "Gateway callback rejected: hash mismatch",
                reference=fields.get("reference"),
            )
            raise GatewaySignatureError(
                "Callback hash verification failed",
                code="GATEWAY_BAD_HASH",
                reference=fields.get("reference"),
            )
        return _to_status(fields)


_gateway: Optional[PaynowGateway] = None


def get_payment_gateway() -> PaynowGateway:
    """Process-wide gateway so the HTTP connection pool is shared."""
    global _gateway
    if _gateway is None:
        _gateway = PaynowGateway()
    return _gateway


async def close_payment_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
