"""
KYC API Client - async HTTP client for the KYC backend.

Endpoints consumed:
- GET  /api/kyc/countries
- GET  /api/kyc/status/{address}
- POST /api/kyc/submit (multipart, idempotent per transaction hash)
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config.settings import settings
from config.countries import FALLBACK_COUNTRIES
from config.document_schema import Country, UploadedFile


logger = logging.getLogger(__name__)


class KYCApiError(Exception):
    """
    Backend call failed.

    network=True means the request never produced a response (connect error,
    timeout); otherwise the backend answered with an error status.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, network: bool = False):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.network = network


class AdjudicationResponse(BaseModel):
    """Body returned by POST /api/kyc/submit."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool = True
    message: str = ""
    auto_approved: bool = Field(False, alias="autoApproved")
    status: Optional[str] = None
    verification_score: int = Field(0, alias="verificationScore")
    is_upgrade: bool = Field(False, alias="isUpgrade")
    tx_hash: Optional[str] = Field(None, alias="txHash")
    replayed: bool = False


class StatusResponse(BaseModel):
    """Body returned by GET /api/kyc/status/{address}."""
    model_config = ConfigDict(extra="ignore")

    found: bool = False
    submission: Optional[Dict[str, Any]] = None

    @property
    def requested_level(self) -> Optional[int]:
        if not self.submission:
            return None
        level = self.submission.get("requestedLevel")
        return int(level) if level is not None else None


class KYCApiClient:
    """Thin async wrapper around the KYC backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.KYC_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            logger.warning(f"[KYC API] {method} {path} -> {e.response.status_code}: {message}")
            raise KYCApiError(message, status_code=e.response.status_code)
        except httpx.HTTPError as e:
            logger.warning(f"[KYC API] {method} {path} failed: {e}")
            raise KYCApiError(f"Network error: {e}", network=True)

    async def get_countries(self) -> List[Country]:
        response = await self._request("GET", "/api/kyc/countries")
        return _decode(response, Country, many=True)

    async def fetch_countries_with_fallback(self) -> Tuple[List[Country], bool]:
        """
        Country list for the form.
        Returns (countries, used_fallback); never raises.
        """
        try:
            countries = await self.get_countries()
            if countries:
                return countries, False
        except (KYCApiError, ValueError) as e:
            logger.warning(f"[KYC API] Using fallback country list: {e}")
        return list(FALLBACK_COUNTRIES), True

    async def get_status(self, address: str) -> StatusResponse:
        response = await self._request("GET", f"/api/kyc/status/{address}")
        return _decode(response, StatusResponse)

    async def submit_verification(
        self,
        fields: Dict[str, str],
        files: Dict[str, UploadedFile],
        idempotency_key: str,
    ) -> AdjudicationResponse:
        """
        Send the multipart adjudication request.
        The idempotency key (the confirmed transaction hash) makes retries safe.
        """
        multipart = {
            name: (upload.filename, upload.data, upload.content_type)
            for name, upload in files.items()
        }
        response = await self._request(
            "POST",
            "/api/kyc/submit",
            data=fields,
            files=multipart or None,
            headers={"Idempotency-Key": idempotency_key},
        )
        result = _decode(response, AdjudicationResponse)
        logger.info(
            f"[KYC API] Adjudication: status={result.status} score={result.verification_score} "
            f"auto_approved={result.auto_approved} replayed={result.replayed}"
        )
        return result


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)


def _decode(response: httpx.Response, model, many: bool = False):
    """Parse a 2xx body into the expected model; a malformed body is a KYCApiError."""
    try:
        body = response.json()
        if many:
            return [model.model_validate(item) for item in body]
        return model.model_validate(body)
    except (ValueError, TypeError, ValidationError) as e:
        logger.warning(f"[KYC API] {response.request.method} {response.request.url.path} returned an invalid body: {e}")
        raise KYCApiError(
            f"Invalid response from backend ({model.__name__})",
            status_code=response.status_code,
        )
