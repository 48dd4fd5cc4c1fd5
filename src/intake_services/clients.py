"""HTTP clients for the postbox, issuer key and credential issuance services."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

import httpx

from intake_common.config import OutboundSettings
from intake_common.errors import IntakeError, NotFoundError, TransientServiceError, ValidationError
from intake_common.resilience import RetryConfig, call_with_retry

from .verification.keys import find_key

logger = logging.getLogger(__name__)

TRANSACTION_ID_HEADER = "x-hpass-txn-id"
ISSUER_ID_HEADER = "x-hpass-issuer-id"
ENTITY_ID_HEADER = "x-hpass-entity-id"
POSTBOX_TOKEN_HEADER = "x-postbox-access-token"
LINK_ID_HEADER = "x-hpass-link-id"
POSTBOX_DOC_EXPIRES_IN_DAYS = 2


class ServiceClient:
    """Thin ``httpx.AsyncClient`` wrapper with status mapping and retries."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        retry: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retry = retry or RetryConfig()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    @classmethod
    def from_settings(
        cls, settings: OutboundSettings, base_url: str, transport: httpx.AsyncBaseTransport | None = None
    ) -> Any:
        return cls(
            base_url,
            timeout=settings.timeout,
            retry=RetryConfig(max_attempts=settings.retry_attempts, delay=settings.retry_delay),
            transport=transport,
        )

    async def __aenter__(self) -> Any:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            msg = f"{self.service_name} request {method} {path} failed: {e}"
            raise TransientServiceError(msg) from e

        if response.status_code >= 500:
            msg = f"{self.service_name} returned {response.status_code}: {response.text}"
            raise TransientServiceError(msg, {"status": response.status_code})
        if response.status_code == 404:
            msg = f"{self.service_name} returned 404 for {path}"
            raise NotFoundError(msg, {"status": 404})
        if response.status_code >= 400:
            msg = f"{self.service_name} returned {response.status_code}: {response.text}"
            raise ValidationError(msg, {"status": response.status_code})
        return response

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await call_with_retry(self._send, method, path, config=self.retry, **kwargs)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            msg = "Response body is not JSON"
            raise ValidationError(msg) from e
        return body if isinstance(body, dict) else {"payload": body}


class PostboxClient(ServiceClient):
    """Document exchange with holders through postbox links."""

    service_name = "Postbox"

    @staticmethod
    def _headers(tx_id: str, authorization: str | None, token: str | None, link_id: str | None) -> dict[str, str]:
        headers = {TRANSACTION_ID_HEADER: tx_id}
        if authorization:
            headers["Authorization"] = authorization
        if token:
            headers[POSTBOX_TOKEN_HEADER] = token
        if link_id:
            headers[LINK_ID_HEADER] = link_id
        return headers

    async def download_document(
        self,
        document_id: str,
        link_id: str | None,
        token: str | None,
        tx_id: str = "",
        authorization: str | None = None,
    ) -> str:
        """Return the base64 content of a document, or raise if it is missing or empty."""
        if not link_id:
            logger.warning("[%s] downloadDocument called without linkId", tx_id)
        logger.debug("[%s] Attempting to download document %s from Postbox", tx_id, document_id)
        try:
            response = await self.request(
                "GET", f"/documents/{document_id}", headers=self._headers(tx_id, authorization, token, link_id)
            )
        except NotFoundError as e:
            msg = f"Document {document_id} not found in Postbox"
            raise NotFoundError(msg) from e
        body = self._json(response)
        if body.get("type") != "document":
            msg = f"Document {document_id} not found in Postbox"
            logger.warning("[%s] %s", tx_id, msg)
            raise NotFoundError(msg)
        content = (body.get("payload") or {}).get("content")
        if not content:
            msg = f"Document {document_id} exists in Postbox but is empty"
            logger.warning("[%s] %s", tx_id, msg)
            raise ValidationError(msg)
        return content

    async def upload_document(
        self,
        link_id: str,
        token: str,
        name: str,
        content: str,
        tx_id: str = "",
        authorization: str | None = None,
    ) -> dict[str, Any]:
        expires_at = datetime.now(timezone.utc) + timedelta(days=POSTBOX_DOC_EXPIRES_IN_DAYS)
        body = {
            "link": link_id,
            "password": token,
            "content": content,
            "expires_at": expires_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "name": name,
        }
        response = await self.request(
            "POST", "/documents", json=body, headers=self._headers(tx_id, authorization, None, None)
        )
        return self._json(response)

    async def delete_document(
        self,
        document_id: str,
        link_id: str | None,
        token: str | None,
        tx_id: str = "",
        authorization: str | None = None,
    ) -> None:
        if not link_id:
            logger.warning("[%s] deleteDocument called without linkId", tx_id)
        await self.request(
            "DELETE", f"/documents/{document_id}", headers=self._headers(tx_id, authorization, token, link_id)
        )


class IssuerClient(ServiceClient):
    """Reads published issuer documents ``{"id", "publicKey": [{id, publicKeyJwk}]}``."""

    service_name = "Issuer API"

    async def get_issuer(self, issuer_id: str, entity_id: str, tx_id: str = "") -> dict[str, Any] | None:
        try:
            response = await self.request(
                "GET",
                f"/issuers/{quote(issuer_id, safe='')}",
                headers={TRANSACTION_ID_HEADER: tx_id, ENTITY_ID_HEADER: entity_id},
            )
        except NotFoundError:
            logger.info("Issuer %s not found for org %s", issuer_id, entity_id)
            return None
        body = self._json(response)
        return body.get("payload", body)


class HttpIssuerKeyResolver:
    """Issuer key resolution over ``IssuerClient``."""

    def __init__(self, client: IssuerClient) -> None:
        self._client = client

    async def resolve_key(self, issuer_id: str, entity_id: str, key_id: str | None) -> dict[str, Any] | None:
        issuer = await self._client.get_issuer(issuer_id, entity_id)
        if not isinstance(issuer, dict):
            return None
        key = find_key(issuer, key_id)
        if key is None and key_id is None:
            return issuer
        return key


class IssuanceClient(ServiceClient):
    """Creates signed credentials for an onboarded issuer."""

    service_name = "HealthPass API"

    async def create_credential(
        self,
        issuer_id: str,
        schema_id: str,
        data: dict[str, Any],
        expiration_date: str | None = None,
        cred_type: list[str] | str | None = None,
        tx_id: str = "",
        authorization: str | None = None,
        output_type: str | None = None,
        obfuscation: Any = None,
    ) -> dict[str, Any]:
        path = "/credentials?type=string" if output_type == "string" else "/credentials"
        body: dict[str, Any] = {"schemaID": schema_id, "data": data, "type": cred_type or []}
        if expiration_date:
            body["expirationDate"] = expiration_date
            logger.debug("[%s] Requesting to generate a new credential with expirationDate", tx_id)
        if obfuscation:
            body["obfuscation"] = obfuscation
            logger.debug("[%s] Requesting to generate a new credential with obfuscation", tx_id)

        headers = {ISSUER_ID_HEADER: issuer_id, TRANSACTION_ID_HEADER: tx_id}
        if authorization:
            headers["Authorization"] = authorization
        logger.debug("[%s] Attempting to create credential by issuerId=%s with schemaId=%s", tx_id, issuer_id, schema_id)
        response = await self.request("POST", path, json=body, headers=headers)
        payload = self._json(response).get("payload")
        if not payload:
            msg = (
                "Failed to create credential, HealthPass API returned incomplete data, "
                f"issuerId={issuer_id} schemaId={schema_id}"
            )
            logger.error("[%s] %s", tx_id, msg)
            raise IntakeError(msg)
        return payload
