"""OIDC human-flow callback implementing the OAuth 2.0 device authorization grant.

PyMongo calls ``fetch`` from the thread that is authenticating the
connection; with ``PyMongoServiceProvider`` that is always a worker thread, so
blocking on the identity provider here never stalls the event loop. Progress
is reported through ``notify(event, *args)``, which the caller is expected to
marshal back onto its loop.
"""

from __future__ import annotations

import logging
import time
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable

import requests
from pymongo.auth_oidc import OIDCCallback, OIDCCallbackContext, OIDCCallbackResult

from mongodb_mcp.errors import AuthFlowError
from mongodb_mcp.keychain import Keychain
from mongodb_mcp.logs import LogId, log_extra

logger = logging.getLogger(__name__)

OIDC_AUTH_SUCCEEDED = "oidc-auth-succeeded"
OIDC_AUTH_FAILED = "oidc-auth-failed"
OIDC_NOTIFY_DEVICE_FLOW = "oidc-notify-device-flow"

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_SCOPES = ("openid", "offline_access")
DEFAULT_TIMEOUT_SECONDS = 300


@dataclass(frozen=True, slots=True)
class DeviceFlowInfo:
    verification_url: str
    user_code: str


class DeviceFlowCallback(OIDCCallback):
    """Obtain an access token by asking the human to approve a device code."""

    def __init__(
        self,
        notify: Callable[..., None],
        *,
        open_browser: bool = False,
        keychain: Keychain | None = None,
        http: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._notify = notify
        self._open_browser = open_browser
        self._keychain = keychain
        self._http = http or requests.Session()
        self._sleep = sleep

    def fetch(self, context: OIDCCallbackContext) -> OIDCCallbackResult:
        try:
            result = self._fetch(context)
        except AuthFlowError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = AuthFlowError(f"OIDC login failed: {e}")
            self._fail(error)
            raise error from e

        if self._keychain is not None:
            self._keychain.register(result.access_token, "secret")
            if result.refresh_token:
                self._keychain.register(result.refresh_token, "secret")
        self._notify(OIDC_AUTH_SUCCEEDED)
        return result

    def _fail(self, error: AuthFlowError) -> None:
        logger.warning(
            f"OIDC login failed: {error}",
            extra=log_extra(LogId.OIDC_FLOW, "oidc-device-flow"),
        )
        self._notify(OIDC_AUTH_FAILED, error)

    def _fetch(self, context: OIDCCallbackContext) -> OIDCCallbackResult:
        idp = context.idp_info
        if idp is None or not idp.clientId:
            raise AuthFlowError("The identity provider did not advertise a client id for this cluster")

        endpoints = self._discover(idp.issuer)
        timeout = context.timeout_seconds or DEFAULT_TIMEOUT_SECONDS

        if context.refresh_token:
            try:
                return self._refresh(endpoints["token_endpoint"], idp.clientId, context.refresh_token)
            except AuthFlowError as e:
                logger.debug(f"Refresh token rejected, starting a new device flow: {e}")

        scopes = list(DEFAULT_SCOPES) + list(idp.requestScopes or [])
        return self._device_flow(endpoints, idp.clientId, scopes, timeout)

    def _discover(self, issuer: str) -> dict[str, str]:
        url = issuer.rstrip("/") + "/.well-known/openid-configuration"
        resp = self._http.get(url, timeout=10)
        resp.raise_for_status()
        body = resp.json()
        if "device_authorization_endpoint" not in body or "token_endpoint" not in body:
            raise AuthFlowError(f"Identity provider {issuer} does not support the device authorization grant")
        return body

    def _refresh(self, token_endpoint: str, client_id: str, refresh_token: str) -> OIDCCallbackResult:
        body = self._token_request(
            token_endpoint,
            {"grant_type": "refresh_token", "client_id": client_id, "refresh_token": refresh_token},
        )
        if "access_token" not in body:
            raise AuthFlowError(body.get("error_description") or body.get("error") or "refresh failed")
        return _callback_result(body)

    def _device_flow(
        self, endpoints: dict[str, str], client_id: str, scopes: list[str], timeout: float
    ) -> OIDCCallbackResult:
        resp = self._http.post(
            endpoints["device_authorization_endpoint"],
            data={"client_id": client_id, "scope": " ".join(scopes)},
            timeout=10,
        )
        resp.raise_for_status()
        grant = resp.json()

        verification_url = grant.get("verification_uri_complete") or grant["verification_uri"]
        info = DeviceFlowInfo(verification_url=verification_url, user_code=grant["user_code"])
        self._notify(OIDC_NOTIFY_DEVICE_FLOW, info)
        logger.info(
            f"Waiting for device login at {info.verification_url}",
            extra={**log_extra(LogId.OIDC_FLOW, "oidc-device-flow"), "no_redaction": True},
        )
        if self._open_browser:
            webbrowser.open(verification_url)

        interval = float(grant.get("interval", 5))
        deadline = time.monotonic() + min(timeout, float(grant.get("expires_in", timeout)))
        while time.monotonic() < deadline:
            self._sleep(interval)
            body = self._token_request(
                endpoints["token_endpoint"],
                {"grant_type": DEVICE_CODE_GRANT, "device_code": grant["device_code"], "client_id": client_id},
            )
            if "access_token" in body:
                return _callback_result(body)
            error = body.get("error")
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval += 5
                continue
            raise AuthFlowError(body.get("error_description") or error or "device login failed")

        raise AuthFlowError("Timed out waiting for the device login to be approved")

    def _token_request(self, token_endpoint: str, data: dict[str, Any]) -> dict[str, Any]:
        resp = self._http.post(token_endpoint, data=data, timeout=10)
        try:
            body = resp.json()
        except ValueError:
            resp.raise_for_status()
            raise AuthFlowError(f"Unexpected token endpoint response ({resp.status_code})")
        if not isinstance(body, dict):
            raise AuthFlowError("Unexpected token endpoint response")
        return body


def _callback_result(body: dict[str, Any]) -> OIDCCallbackResult:
    expires_in = body.get("expires_in")
    return OIDCCallbackResult(
        access_token=body["access_token"],
        expires_in_seconds=float(expires_in) if expires_in is not None else None,
        refresh_token=body.get("refresh_token"),
    )
