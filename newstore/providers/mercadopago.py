import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from newstore.common.helpers import cents_to_amount, digits_only, strip_whitespace
from newstore.common.logging_utils import log_api_call
from newstore.exceptions.core_exceptions import ProviderError, SecurityCodeRequired
from newstore.http import AsyncHttpClient, HttpException, HTTP
from newstore.models.status import normalize_payment_status

logger = logging.getLogger(__name__)

USER_AGENT = "newstore-ticket-core/1.0"


@dataclass
class ProviderPayment:
    id: str
    status: str
    external_reference: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    ticket_url: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_response(cls, body: dict[str, Any]) -> "ProviderPayment":
        if not isinstance(body, dict) or body.get("id") is None:
            raise ProviderError("Malformed payment response from provider.")

        transaction = (body.get("point_of_interaction") or {}).get(
            "transaction_data"
        ) or {}
        qr_code = transaction.get("qr_code")
        return cls(
            id=str(body["id"]),
            status=normalize_payment_status(body.get("status")),
            external_reference=body.get("external_reference"),
            qr_code=qr_code.strip() if isinstance(qr_code, str) else None,
            qr_code_base64=strip_whitespace(transaction.get("qr_code_base64")),
            ticket_url=transaction.get("ticket_url"),
            raw=body,
        )


@dataclass
class SavedCard:
    card_id: str
    brand: Optional[str]
    last4: Optional[str]


def _demands_security_code(error: ProviderError) -> bool:
    return "security_code" in error.message.lower()


def _error_message(method: str, path: str, status: int, body: Any) -> str:
    if not isinstance(body, dict):
        return f"Mercado Pago {method} {path} failed ({status})"

    causes = body.get("cause")
    cause_text = ""
    if isinstance(causes, list) and causes:
        cause_text = " | ".join(
            f"{c.get('code', '')}:{c.get('description') or c.get('message') or ''}"
            for c in causes
            if isinstance(c, dict)
        )

    message = body.get("message") or body.get("error") or ""
    parts = [p for p in (str(message), cause_text) if p]
    if not parts:
        return f"Mercado Pago {method} {path} failed ({status})"
    return f"Mercado Pago {method} {path} failed ({status}): " + " ".join(parts)


class MercadoPagoClient:
    """Wire client for the Mercado Pago REST API.

    Every failure surfaces as ProviderError. Nothing is retried here; pending
    payments are healed by the reconciliation sweeper.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        http_client: Optional[AsyncHttpClient] = None,
        timeout: float = 15,
        statement_descriptor: Optional[str] = None,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.http = http_client or HTTP
        self.timeout = timeout
        self.statement_descriptor = statement_descriptor or None

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[dict] = None,
        params: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        if not self.access_token:
            raise ProviderError("MP_ACCESS_TOKEN is not configured.", retryable=False)

        try:
            response = await self.http.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers(idempotency_key),
                json_data=json_data,
                timeout=self.timeout,
            )
        except HttpException as e:
            raise ProviderError(
                f"Mercado Pago {method} {path}: {e.message}", provider_status=e.status
            )

        status = response["status"]
        body = response["body"]
        if status >= 400:
            # 5xx, 408 and 429 already raised HttpException above
            message = _error_message(method, path, status, body)
            logger.warning(message)
            raise ProviderError(message, provider_status=status, retryable=False)

        if not isinstance(body, dict):
            raise ProviderError(
                f"Mercado Pago {method} {path} returned a non JSON body",
                provider_status=status,
            )
        return body

    @log_api_call("mercadopago")
    async def create_pix_payment(
        self,
        amount_cents: int,
        description: str,
        payer_email: str,
        external_reference: str,
        notification_url: Optional[str],
        expires_at: datetime,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderPayment:
        body: dict[str, Any] = {
            "transaction_amount": float(cents_to_amount(amount_cents)),
            "description": description,
            "payment_method_id": "pix",
            "payer": {"email": payer_email},
            "external_reference": external_reference,
            "date_of_expiration": expires_at.isoformat(timespec="milliseconds"),
            "metadata": metadata or {},
        }
        if notification_url:
            body["notification_url"] = notification_url

        data = await self._request(
            "POST", "/v1/payments", json_data=body, idempotency_key=str(uuid.uuid4())
        )
        return ProviderPayment.from_response(data)

    @log_api_call("mercadopago")
    async def get_payment(self, payment_id: str) -> ProviderPayment:
        data = await self._request("GET", f"/v1/payments/{payment_id}")
        return ProviderPayment.from_response(data)

    @log_api_call("mercadopago")
    async def ensure_customer(
        self,
        email: Optional[str],
        name: Optional[str] = None,
        user_id: Optional[str] = None,
        doc_number: Optional[str] = None,
    ) -> str:
        """Find the customer by e-mail or create one. Returns the customer id."""
        if email:
            found = await self._request(
                "GET", "/v1/customers/search", params={"email": email}
            )
            results = found.get("results") or []
            if results and results[0].get("id"):
                return str(results[0]["id"])

        body: dict[str, Any] = {"first_name": name or "Cliente"}
        if email:
            body["email"] = email
        if user_id:
            body["description"] = f"user:{user_id}"
        doc = digits_only(doc_number)
        if doc:
            body["identification"] = {
                "type": "CNPJ" if len(doc) > 11 else "CPF",
                "number": doc,
            }

        created = await self._request("POST", "/v1/customers", json_data=body)
        if created.get("id") is None:
            raise ProviderError("Malformed customer response from provider.")
        return str(created["id"])

    @log_api_call("mercadopago")
    async def save_card(self, customer_id: str, card_token: str) -> SavedCard:
        card = await self._request(
            "POST", f"/v1/customers/{customer_id}/cards", json_data={"token": card_token}
        )
        if card.get("id") is None:
            raise ProviderError("Malformed card response from provider.")

        payment_method = card.get("payment_method") or {}
        issuer = card.get("issuer") or {}
        brand = payment_method.get("id") or payment_method.get("name") or issuer.get("name")
        return SavedCard(
            card_id=str(card["id"]),
            brand=brand,
            last4=card.get("last_four_digits"),
        )

    @log_api_call("mercadopago")
    async def charge_saved_card(
        self,
        customer_id: str,
        card_id: str,
        amount_cents: int,
        description: str,
        metadata: Optional[dict[str, Any]] = None,
        security_code: Optional[str] = None,
    ) -> ProviderPayment:
        """Mint a card token from the saved card and charge it once.

        No CVV is stored. If the account demands one the charge fails fast
        with SecurityCodeRequired.
        """
        token_body: dict[str, Any] = {"customer_id": customer_id, "card_id": card_id}
        if security_code:
            token_body["security_code"] = str(security_code)

        try:
            token = await self._request("POST", "/v1/card_tokens", json_data=token_body)
        except ProviderError as e:
            if _demands_security_code(e):
                raise SecurityCodeRequired()
            raise

        if token.get("id") is None:
            raise ProviderError("Malformed card token response from provider.")

        body: dict[str, Any] = {
            "transaction_amount": float(cents_to_amount(amount_cents)),
            "description": description or "AutoPay",
            "token": token["id"],
            "installments": 1,
            "payer": {"type": "customer", "id": customer_id},
            "metadata": metadata or {},
            "binary_mode": True,
        }
        if self.statement_descriptor:
            body["statement_descriptor"] = self.statement_descriptor

        try:
            data = await self._request(
                "POST", "/v1/payments", json_data=body, idempotency_key=str(uuid.uuid4())
            )
        except ProviderError as e:
            if _demands_security_code(e):
                raise SecurityCodeRequired()
            raise
        return ProviderPayment.from_response(data)


_client_instance: Optional[MercadoPagoClient] = None


def get_mercadopago_client() -> MercadoPagoClient:
    """Shared client built from configuration."""
    global _client_instance
    if _client_instance is None:
        from newstore.config import CONFIG

        _client_instance = MercadoPagoClient(
            access_token=CONFIG.MP_ACCESS_TOKEN,
            base_url=CONFIG.MP_BASE_URL,
            timeout=CONFIG.MP_TIMEOUT_SECONDS,
            statement_descriptor=CONFIG.MP_STATEMENT,
        )
    return _client_instance
