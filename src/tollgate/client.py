"""
HTTP client that pays x402-protected resources.

Flow for ``X402Client.pay``:
1. Send the request unpaid
2. On 402, parse the payment requirement from the response
3. Refuse a requirement whose resource is on another host than the request
4. Authorize against policy and budget and sign a payment header
5. Retry once with the payment header attached
6. On a non-2xx paid response, release the budget reservation

Business rejections (budget, domain, policy, expired session key) come back
as ``PaymentResult(success=False)``; only the unpaid probe is ever retried.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from .audit import AuditTrail, EventType
from .budget import BudgetLedger
from .config import PaymentConfig, normalize_network
from .errors import (
    BudgetError,
    DomainNotAllowedError,
    PolicyViolationError,
    SessionKeyExpiredError,
    ValidationError,
)
from .payment import AuthorizedPayment, PaymentRequirement, authorize_payment
from .policy import AgentPolicy
from .session import SessionKey

logger = logging.getLogger(__name__)


PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

_REJECTIONS = (BudgetError, PolicyViolationError, SessionKeyExpiredError, ValidationError)


@dataclass
class PaymentResult:
    """Outcome of a (possibly paid) request."""

    success: bool
    status_code: Optional[int] = None
    amount: int = 0
    resource: Optional[str] = None
    reason: Optional[str] = None
    payment_header: Optional[str] = None
    payment_response: Optional[str] = None
    response: Optional[httpx.Response] = field(default=None, repr=False)

    @property
    def paid(self) -> bool:
        return self.success and self.amount > 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status_code": self.status_code,
            "amount": str(self.amount),
            "resource": self.resource,
            "reason": self.reason,
            "payment_response": self.payment_response,
        }


def _load_requirement_document(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        pass
    try:
        decoded = base64.b64decode(raw + "=" * (-len(raw) % 4), validate=False)
        return json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Payment requirement header is not JSON: {e}") from e


def parse_payment_required(
    response: httpx.Response,
    network: str,
    header_name: str = "X-PAYMENT-REQUIRED",
) -> PaymentRequirement:
    """Extract the requirement for ``network`` from a 402 response.

    Reads the requirement header first and falls back to the JSON body. An
    x402 ``accepts`` list is filtered down to the first entry on ``network``.
    """
    raw = response.headers.get(header_name)
    if raw:
        doc = _load_requirement_document(raw)
    else:
        try:
            doc = response.json()
        except ValueError as e:
            raise ValidationError("402 response carries no payment requirement") from e

    if not isinstance(doc, dict):
        raise ValidationError("Payment requirement must be a JSON object")

    target = normalize_network(network)
    entry = doc
    accepts = doc.get("accepts")
    if accepts is not None:
        if not isinstance(accepts, list):
            raise ValidationError("Payment requirement 'accepts' must be a list")
        entry = None
        for candidate in accepts:
            if not isinstance(candidate, dict):
                continue
            try:
                if normalize_network(str(candidate.get("network", ""))) == target:
                    entry = candidate
                    break
            except ValueError:
                continue
        if entry is None:
            raise ValidationError(f"No payment requirement offered for network {target}")

    entry = dict(entry)
    if "resource" not in entry:
        top = doc.get("resource")
        if isinstance(top, dict):
            top = top.get("url")
        entry["resource"] = top if isinstance(top, str) and top else str(response.request.url)
    return PaymentRequirement.from_dict(entry)


def _check_resource_host(url: str, requirement: PaymentRequirement) -> None:
    # The requirement comes from the server, so its resource may name any host.
    requested = (httpx.URL(url).host or "").lower()
    if requirement.domain != requested:
        raise DomainNotAllowedError(
            requirement.domain,
            f"Requirement resource host {requirement.domain!r} does not match "
            f"requested host {requested!r}",
        )


class X402Client:
    """Pays for x402 resources out of one budget ledger with one session key."""

    def __init__(
        self,
        ledger: BudgetLedger,
        session_key: SessionKey,
        config: Optional[PaymentConfig] = None,
        policy: Optional[AgentPolicy] = None,
        audit: Optional[AuditTrail] = None,
        agent_id: str = "agent",
        http: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ):
        self.ledger = ledger
        self.session_key = session_key
        self.config = config or PaymentConfig()
        self.policy = policy
        self.audit = audit
        self.agent_id = agent_id
        self.clock = clock
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=self.config.http_timeout_seconds)

    @property
    def address(self) -> str:
        return self.session_key.address

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "X402Client":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _audit(self, event_type: EventType, **fields) -> None:
        if self.audit is not None:
            self.audit.log(event_type, agent_id=self.agent_id, timestamp=self.clock(), **fields)

    def _probe(self, method: str, url: str, headers: dict, **kwargs) -> httpx.Response:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._http.request(method, url, headers=headers, **kwargs)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = e
                if attempt < self.max_retries:
                    logger.info(
                        "Retryable error (attempt %d/%d): %s",
                        attempt + 1,
                        self.max_retries + 1,
                        e,
                    )
                    time.sleep(self.retry_delay * (attempt + 1))
        assert last_error is not None
        raise last_error

    def pay(self, url: str, method: str = "GET", **kwargs) -> PaymentResult:
        """Request ``url``, paying once if the server answers 402."""
        headers = dict(kwargs.pop("headers", None) or {})

        try:
            response = self._probe(method, url, headers, **kwargs)
        except httpx.HTTPError as e:
            return PaymentResult(
                success=False,
                resource=url,
                reason=f"Failed after {self.max_retries + 1} attempts: {type(e).__name__}: {e}",
            )

        if response.status_code != 402:
            ok = response.is_success
            return PaymentResult(
                success=ok,
                status_code=response.status_code,
                resource=url,
                reason=None if ok else f"Unexpected status {response.status_code}: {response.text[:200]}",
                response=response,
            )

        try:
            requirement = parse_payment_required(
                response, self.config.network, self.config.payment_required_header
            )
        except ValidationError as e:
            self._audit(EventType.PAYMENT_DENIED, resource=url, success=False, reason=str(e))
            return PaymentResult(
                success=False, status_code=402, resource=url, reason=str(e), response=response
            )

        self._audit(
            EventType.PAYMENT_REQUIRED,
            amount=requirement.max_amount_required,
            resource=requirement.resource,
            details={"pay_to": requirement.pay_to, "network": requirement.network},
        )

        try:
            _check_resource_host(url, requirement)
            authorized = authorize_payment(
                requirement,
                self.ledger,
                self.session_key,
                int(self.clock()),
                config=self.config,
                policy=self.policy,
            )
        except _REJECTIONS as e:
            logger.warning("Payment for %s denied: %s", requirement.resource, e)
            self._audit(
                EventType.PAYMENT_DENIED,
                amount=requirement.max_amount_required,
                resource=requirement.resource,
                success=False,
                reason=str(e),
            )
            return PaymentResult(
                success=False,
                status_code=402,
                amount=requirement.max_amount_required,
                resource=requirement.resource,
                reason=str(e),
                response=response,
            )

        self._audit(
            EventType.PAYMENT_AUTHORIZED,
            amount=requirement.max_amount_required,
            resource=requirement.resource,
            domain=requirement.domain,
            details={"nonce": authorized.header.payload.authorization.nonce},
        )
        return self._send_paid(method, url, headers, requirement, authorized, **kwargs)

    def _send_paid(
        self,
        method: str,
        url: str,
        headers: dict,
        requirement: PaymentRequirement,
        authorized: AuthorizedPayment,
        **kwargs,
    ) -> PaymentResult:
        encoded = authorized.encode()
        paid_headers = {**headers, self.config.payment_header: encoded}
        try:
            paid = self._http.request(method, url, headers=paid_headers, **kwargs)
        except httpx.HTTPError as e:
            self._release(authorized, requirement, f"{type(e).__name__}: {e}")
            return PaymentResult(
                success=False,
                amount=requirement.max_amount_required,
                resource=requirement.resource,
                reason=f"Paid request failed: {type(e).__name__}: {e}",
                payment_header=encoded,
            )

        if not paid.is_success:
            detail = f"Payment rejected ({paid.status_code}): {paid.text[:200]}"
            self._release(authorized, requirement, detail)
            return PaymentResult(
                success=False,
                status_code=paid.status_code,
                amount=requirement.max_amount_required,
                resource=requirement.resource,
                reason=detail,
                payment_header=encoded,
                response=paid,
            )

        logger.info(
            "Paid %d for %s (status %d)",
            requirement.max_amount_required,
            requirement.resource,
            paid.status_code,
        )
        self._audit(
            EventType.PAYMENT_SETTLED,
            amount=requirement.max_amount_required,
            resource=requirement.resource,
            domain=requirement.domain,
        )
        return PaymentResult(
            success=True,
            status_code=paid.status_code,
            amount=requirement.max_amount_required,
            resource=requirement.resource,
            payment_header=encoded,
            payment_response=paid.headers.get(PAYMENT_RESPONSE_HEADER),
            response=paid,
        )

    def _release(
        self, authorized: AuthorizedPayment, requirement: PaymentRequirement, reason: str
    ) -> None:
        self.ledger.release(authorized.record)
        logger.warning("Settlement failed for %s: %s", requirement.resource, reason)
        self._audit(
            EventType.PAYMENT_ROLLED_BACK,
            amount=requirement.max_amount_required,
            resource=requirement.resource,
            success=False,
            reason=reason,
        )
