"""
Operation Client
----------------
Talks to the verification provider: creates enrollment operations and
authentication transactions, reads their status and their proof result.

Two behaviours matter to everything above this layer:
- a 404 on status/result is NOT an error. Right after creation the provider
  takes seconds to minutes before the id becomes queryable, and an id may be
  served by either the operations or the transactions endpoint. Only when both
  say 404 is the answer "not yet queryable" / "result not ready".
- network errors, timeouts and 5xx are retried here with bounded backoff and
  only then raised as ProviderUnavailable.
"""
from __future__ import annotations

import random
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from bioauth.settings import settings
from bioauth.observability.logging import log
from bioauth.provider.errors import ProviderError, ProviderUnavailable, InvalidSubject, ResultNotReady
from bioauth.provider.types import RemoteStatus, CreatedOperation
from bioauth.store.models import ProofResult, AUTHENTICATION, ENROLLMENT, KINDS
from bioauth.utils.time import now_ms

ENROLL_OPERATION_NAME = "EnrollBioCredential"
VERIFY_TRANSACTION_NAME = "Verify_Identity"
TRANSPORT_PUSH = 0
CREDENTIAL_BIOMETRIC = 1


class OperationClient:
    def __init__(
        self,
        http: Optional[httpx.Client] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        max_retries: Optional[int] = None,
    ):
        self._http = http or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SEC)
        self._sleep = sleep
        self._max_retries = int(settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries)
        self._access_token: Optional[str] = None

        base = settings.PROVIDER_BASE_URL
        self.admin_url = f"{base}/AdministrationServiceRest"
        self.transaction_url = f"{base}/AuthorizationServiceRest"
        self.idp_url = settings.PROVIDER_IDP_URL

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------
    def _backoff_sec(self, attempt: int) -> float:
        """Exponential backoff with jitter."""
        base = int(settings.PROVIDER_BACKOFF_BASE_MS or 250)
        max_delay = int(settings.PROVIDER_BACKOFF_MAX_MS or 2000)
        delay = base * (2 ** (attempt - 1))
        jitter = delay * 0.1 * random.uniform(-1, 1)
        return min(max_delay, int(delay + jitter)) / 1000.0

    def _authenticate(self) -> str:
        if not settings.PROVIDER_API_KEY_ID or not settings.PROVIDER_API_KEY_VALUE:
            raise ProviderError("Provider API keys are not configured")
        try:
            resp = self._http.post(
                f"{self.idp_url}/auth/token",
                auth=(settings.PROVIDER_API_KEY_ID, settings.PROVIDER_API_KEY_VALUE),
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"token request failed: {type(e).__name__}: {e}") from e
        if resp.status_code >= 500:
            raise ProviderUnavailable(f"token request failed: {resp.status_code}", resp.status_code)
        if resp.status_code >= 400:
            raise ProviderError(f"token request rejected: {resp.status_code}", resp.status_code)
        body = self._json(resp, "token response")
        token = body.get("AccessToken") if isinstance(body, dict) else None
        if not token:
            raise ProviderError("token response carried no AccessToken")
        self._access_token = token
        log(event="provider_authenticated")
        return token

    def _headers(self) -> Dict[str, str]:
        token = self._access_token or self._authenticate()
        return {"Content-Type": "application/json", "Authorization": f"Bearer {token}"}

    def _request(self, method: str, url: str, *, json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        Send with bounded retries. Returns the response for any status < 500
        (callers decide what a 404 or 4xx means); raises ProviderUnavailable
        once retries on network errors / 5xx / 429 are exhausted.
        """
        attempt = 0
        reauthenticated = False
        last_err = ""
        while True:
            attempt += 1
            try:
                resp = self._http.request(method, url, headers=self._headers(), json=json)
            except httpx.HTTPError as e:
                last_err = f"{type(e).__name__}: {e}"
                status = 0
            except ProviderUnavailable as e:
                # token endpoint down
                last_err = str(e)
                status = e.status_code
            else:
                status = resp.status_code
                if status == 401 and not reauthenticated:
                    # token expired provider-side; one fresh token, does not count as a retry
                    self._access_token = None
                    reauthenticated = True
                    attempt -= 1
                    continue
                if status < 500 and status != 429:
                    return resp
                last_err = f"HTTP {status}"

            if attempt > self._max_retries:
                log(event="provider_unavailable", method=method, url=url, attempts=attempt, error=last_err)
                raise ProviderUnavailable(f"{method} {url} failed after {attempt} attempts: {last_err}", status)

            delay = self._backoff_sec(attempt)
            log(event="provider_retry_scheduled", method=method, url=url, attempt=attempt, backoffMs=int(delay * 1000), error=last_err)
            self._sleep(delay)

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return (resp.text or "")[:300]
        if isinstance(body, dict):
            return str(body.get("Message") or body.get("message") or body)[:300]
        return str(body)[:300]

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> Any:
        """Decode a 2xx body. A gateway page or truncated body is treated like a 5xx."""
        try:
            return resp.json()
        except ValueError as e:
            log(event="provider_bad_body", what=what, statusCode=resp.status_code, contentType=resp.headers.get("content-type", ""))
            raise ProviderUnavailable(f"{what} is not JSON (HTTP {resp.status_code})", resp.status_code) from e

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------
    def _ensure_account(self, subject_ref: str, profile: Dict[str, Any]) -> None:
        name = profile.get("displayName") or subject_ref
        body = {
            "AccountNumber": subject_ref,
            "Version": 0,
            "DisplayName": name,
            "CustomDisplayName": name,
            "Description": profile.get("description") or "",
            "Rules": 1,
            "Enabled": True,
            "Custom": True,
            "DisableReason": "",
            "Email": profile.get("email") or "",
            "PhoneNumber": profile.get("phone") or "",
            "EmailVerified": False,
            "PhoneNumberVerified": False,
        }
        resp = self._request("POST", f"{self.admin_url}/v1/accounts", json=body)
        if resp.status_code == 409:
            log(event="provider_account_exists", userId=subject_ref)
            return
        if resp.status_code >= 400:
            raise InvalidSubject(f"account rejected: {self._error_message(resp)}", resp.status_code)
        log(event="provider_account_created", userId=subject_ref)

    def _capture_url(self, kind: str, operation_id: str, secret: str) -> str:
        params = {"secret": secret, "baseUrl": settings.PROVIDER_PUBLIC_URL}
        if kind == AUTHENTICATION:
            params = {"transactionId": operation_id, **params, "mode": "authentication"}
        else:
            params = {"operationId": operation_id, **params}
        return f"{settings.CAPTURE_WEB_URL}?{urlencode(params)}"

    def create_operation(self, kind: str, subject_ref: str, **profile) -> CreatedOperation:
        """
        Enrollment: ensure the provider account exists, then create an
        EnrollBioCredential operation. Authentication: create a
        Verify_Identity transaction.
        """
        if kind not in KINDS:
            raise InvalidSubject(f"unknown operation kind: {kind!r}")
        subject_ref = (subject_ref or "").strip()
        if not subject_ref:
            raise InvalidSubject("subject reference is required")

        tag = f"bioauth-{kind}-{now_ms()}"
        if kind == ENROLLMENT:
            self._ensure_account(subject_ref, profile)
            timeout_sec = int(settings.ENROLLMENT_TIMEOUT_SEC)
            url = f"{self.transaction_url}/v2/operations"
            body = {
                "AccountNumber": subject_ref,
                "Codeword": "",
                "Name": ENROLL_OPERATION_NAME,
                "Timeout": timeout_sec,
                "TransportType": TRANSPORT_PUSH,
                "Tag": tag,
            }
        else:
            timeout_sec = int(settings.AUTHENTICATION_TIMEOUT_SEC)
            url = f"{self.transaction_url}/v2/transactions"
            body = {
                "AccountNumber": subject_ref,
                "Name": VERIFY_TRANSACTION_NAME,
                "Timeout": timeout_sec,
                "ConfirmationPolicy": {
                    "TransportType": TRANSPORT_PUSH,
                    "CredentialType": CREDENTIAL_BIOMETRIC,
                    "MinimumConfidence": float(settings.AUTH_MIN_CONFIDENCE),
                    "MaximumAttempts": int(settings.AUTH_MAX_ATTEMPTS),
                },
                "Tag": tag,
            }

        resp = self._request("POST", url, json=body)
        if resp.status_code >= 400:
            raise InvalidSubject(f"{kind} rejected: {self._error_message(resp)}", resp.status_code)

        data = self._json(resp, f"{kind} response")
        if not isinstance(data, dict):
            data = {}
        operation_id = data.get("OperationId") or data.get("TransactionId")
        if not operation_id:
            raise ProviderError(f"{kind} response carried no operation id")
        secret = data.get("OneTimeSecret") or ""

        created = CreatedOperation(
            operationId=str(operation_id),
            secret=secret,
            expiresAt=now_ms() + timeout_sec * 1000,
            isTransaction=kind == AUTHENTICATION,
            captureUrl=self._capture_url(kind, str(operation_id), secret),
        )
        log(event="provider_operation_created", kind=kind, operationId=created.operationId, userId=subject_ref, oneTimeSecret=secret)
        return created

    # ------------------------------------------------------------------
    # status & result
    # ------------------------------------------------------------------
    def _get_with_fallback(self, operation_id: str, suffix: str, is_transaction: bool) -> Optional[httpx.Response]:
        """GET from the preferred endpoint family, falling back to the other on 404. None = both 404."""
        families = ["transactions", "operations"] if is_transaction else ["operations", "transactions"]
        for family in families:
            resp = self._request("GET", f"{self.transaction_url}/v2/{family}/{operation_id}{suffix}")
            if resp.status_code != 404:
                return resp
        return None

    def query_status(self, operation_id: str, is_transaction: bool = False) -> RemoteStatus:
        resp = self._get_with_fallback(operation_id, "", is_transaction)
        if resp is None:
            log(event="provider_status_not_yet_queryable", operationId=operation_id)
            return RemoteStatus.not_yet_queryable()
        if resp.status_code >= 400:
            raise ProviderError(f"status query rejected: {self._error_message(resp)}", resp.status_code)
        payload = self._json(resp, "status response")
        if not isinstance(payload, dict):
            raise ProviderUnavailable(f"status response for {operation_id} is not an object", resp.status_code)
        status = RemoteStatus.from_payload(payload)
        log(
            event="provider_status",
            operationId=operation_id,
            stateCode=status.stateCode,
            resultCode=status.resultCode,
            completedAt=status.completedAt,
        )
        return status

    def fetch_result(self, operation_id: str, is_transaction: bool = False) -> ProofResult:
        resp = self._get_with_fallback(operation_id, "/result", is_transaction)
        if resp is None or resp.status_code == 204:
            raise ResultNotReady(f"no result for {operation_id} yet", 404)
        if resp.status_code >= 400:
            # the provider answers 400 while the operation is still pending
            raise ResultNotReady(f"result not available: {self._error_message(resp)}", resp.status_code)
        payload = self._json(resp, "result response")
        if not payload:
            raise ResultNotReady(f"empty result for {operation_id}")
        log(event="provider_result", operationId=operation_id, resultKeys=sorted(payload.keys()) if isinstance(payload, dict) else [])
        return ProofResult.from_payload(payload if isinstance(payload, dict) else {})


_client: Optional[OperationClient] = None


def get_operation_client() -> OperationClient:
    global _client
    if _client is None:
        _client = OperationClient()
    return _client
