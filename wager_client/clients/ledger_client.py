from typing import Optional

import httpx

from wager_client.config import settings
from wager_client.errors import CREDENTIAL_ERROR_CODES, RemoteError, RemoteErrorKind
from wager_client.logging_config import get_logger
from wager_client.schemas.ledger_schemas import (
    BalanceResponse,
    CreditResponse,
    DebitResponse,
    ForceEndResponse,
    SessionSnapshot,
    StatusResponse,
)
from wager_client.security import signed_headers

logger = get_logger(__name__)

_BUSINESS_CODES = {
    "insufficient_funds": RemoteErrorKind.INSUFFICIENT_FUNDS,
    "not_found": RemoteErrorKind.NOT_FOUND,
}


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error") or (body.get("detail") if isinstance(body.get("detail"), dict) else None)
        if isinstance(error, dict):
            return error.get("code")
    return None


def classify_response(response: httpx.Response) -> RemoteError:
    """
    Map a non-2xx ledger response onto the closed set of remote error kinds.
    """
    status = response.status_code
    code = _error_code(response)
    if code in CREDENTIAL_ERROR_CODES or status in (401, 403):
        kind = RemoteErrorKind.CREDENTIAL
    elif code in _BUSINESS_CODES:
        kind = _BUSINESS_CODES[code]
    elif status == 404:
        kind = RemoteErrorKind.NOT_FOUND
    elif status == 429:
        kind = RemoteErrorKind.RATE_LIMITED
    elif status >= 500:
        kind = RemoteErrorKind.SERVER
    else:
        kind = RemoteErrorKind.REJECTED
    return RemoteError(kind, detail=code or response.text, status_code=status)


def classify_exception(exc: httpx.HTTPError) -> RemoteError:
    if isinstance(exc, httpx.TimeoutException):
        return RemoteError(RemoteErrorKind.TIMEOUT, detail=str(exc))
    return RemoteError(RemoteErrorKind.CONNECTIVITY, detail=str(exc))


class LedgerClient:
    """
    Thin async client for the remote ledger and game-authority service.

    Every failure leaves this class as a ``RemoteError``; callers never see
    httpx exceptions or raw status codes.
    """

    def __init__(
        self,
        identity_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {identity_token}"} if identity_token else {}
        self.authenticated = identity_token is not None
        self.client = httpx.AsyncClient(
            base_url=base_url or str(settings.ledger_base_url),
            timeout=timeout if timeout is not None else settings.request_timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self.root_key: Optional[str] = None

    async def _request(self, method: str, url: str, json: Optional[dict] = None, idempotency_key: Optional[str] = None) -> httpx.Response:
        body = json or {}
        headers = signed_headers(body)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            if method == "GET":
                response = await self.client.request(method, url, headers=headers)
            else:
                response = await self.client.request(method, url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            error = classify_exception(exc)
            logger.warning("Ledger request failed method=%s url=%s kind=%s", method, url, error.kind.value)
            raise error from exc
        if response.status_code >= 400:
            error = classify_response(response)
            logger.warning(
                "Ledger rejected request method=%s url=%s status=%s kind=%s",
                method,
                url,
                response.status_code,
                error.kind.value,
            )
            raise error
        return response

    async def handshake(self) -> StatusResponse:
        resp = await self._request("GET", "/status")
        status = StatusResponse.model_validate(resp.json())
        self.root_key = status.rootKey
        return status

    async def get_balance(self, account_id: str) -> int:
        resp = await self._request("GET", f"/accounts/{account_id}/balance")
        return BalanceResponse.model_validate(resp.json()).balance

    async def debit(self, wager_id: str, payload: dict, idempotency_key: str) -> DebitResponse:
        resp = await self._request("POST", f"/wagers/{wager_id}/debit", json=payload, idempotency_key=idempotency_key)
        return DebitResponse.model_validate(resp.json())

    async def get_active_session(self, account_id: str) -> Optional[SessionSnapshot]:
        resp = await self._request("GET", f"/accounts/{account_id}/active-session")
        body = resp.json()
        if not body:
            return None
        return SessionSnapshot.model_validate(body)

    async def apply_action(self, wager_id: str, payload: dict) -> SessionSnapshot:
        resp = await self._request("POST", f"/wagers/{wager_id}/actions", json=payload)
        return SessionSnapshot.model_validate(resp.json())

    async def credit(self, wager_id: str, payload: dict, idempotency_key: str) -> CreditResponse:
        resp = await self._request("POST", f"/wagers/{wager_id}/credit", json=payload, idempotency_key=idempotency_key)
        return CreditResponse.model_validate(resp.json())

    async def force_end_session(self, wager_id: str) -> str:
        resp = await self._request("POST", f"/wagers/{wager_id}/force-end", json={})
        return ForceEndResponse.model_validate(resp.json()).status

    async def aclose(self) -> None:
        await self.client.aclose()
