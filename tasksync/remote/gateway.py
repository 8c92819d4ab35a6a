from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from tasksync.core.errors import GatewayResult, NetworkError, Ok, RejectedError

from .realtime_socket import ChangeEvent, RealtimeSocket, SubscriptionHandle

logger = logging.getLogger(__name__)

# Statuses worth retrying: the request may succeed unchanged later.
TRANSIENT_STATUSES = {408, 425, 429}
# Refresh the access token this many seconds before it expires.
REFRESH_MARGIN_SEC = 60


def _error_message(res: requests.Response) -> str:
    try:
        payload = res.json()
    except ValueError:
        return (res.text or res.reason or "").strip()[:300]
    if isinstance(payload, dict):
        for key in ("message", "msg", "error_description", "error"):
            if payload.get(key):
                return str(payload[key])
    return json.dumps(payload, ensure_ascii=False)[:300]


def classify_response(res: requests.Response) -> GatewayResult:
    if res.status_code in TRANSIENT_STATUSES or res.status_code >= 500:
        return NetworkError(f"http_{res.status_code}: {_error_message(res)}")
    if res.status_code >= 400:
        return RejectedError(_error_message(res) or f"http_{res.status_code}", status=res.status_code)
    if res.status_code == 204 or not res.content:
        return Ok(None)
    try:
        return Ok(res.json())
    except ValueError:
        return RejectedError("invalid_json_response", status=res.status_code)


class RemoteGateway:
    """The only component that talks to the remote store.

    REST calls go to a PostgREST-style endpoint (``/rest/v1/<table>``),
    session calls to ``/auth/v1``. Rows are owner-scoped by the server;
    creates stamp ``user_id`` from the signed-in session. Every call
    returns ``Ok``, ``NetworkError`` or ``RejectedError``.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        session_file: str = "",
        schema: str = "public",
        timeout: int = 10,
        socket: Optional[RealtimeSocket] = None,
        http: Optional[requests.Session] = None,
    ):
        self.url = (url or "").rstrip("/")
        self.anon_key = anon_key or ""
        self.session_file = session_file or ""
        self.schema = schema or "public"
        self.timeout = timeout
        self.http = http or requests.Session()
        self.socket = socket or RealtimeSocket(
            url=self._realtime_url(),
            token_provider=self._access_token,
            schema=self.schema,
        )

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _load_session(self) -> dict[str, Any] | None:
        if not self.session_file:
            return None
        p = Path(self.session_file)
        if not p.exists():
            return None
        try:
            payload = json.loads(p.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("session_file_unreadable path=%s", p)
            return None
        return payload if isinstance(payload, dict) else None

    def _save_session(self, data: dict[str, Any]) -> None:
        if not self.session_file:
            return
        p = Path(self.session_file)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    def _store_token_response(self, token_data: dict[str, Any]) -> dict[str, Any]:
        expires_in = int(token_data.get("expires_in") or 3600)
        session = {
            "access_token": token_data.get("access_token"),
            "refresh_token": token_data.get("refresh_token"),
            "expires_at": int(token_data.get("expires_at") or time.time() + expires_in),
            "user": token_data.get("user") or {},
        }
        self._save_session(session)
        return session

    def sign_in(self, email: str, password: str) -> GatewayResult:
        if not self.url or not self.anon_key:
            return RejectedError("remote_not_configured")
        result = self._send(
            "POST",
            f"{self.url}/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            auth=False,
        )
        if not isinstance(result, Ok):
            return result
        session = self._store_token_response(result.value or {})
        logger.info("signed_in user=%s", (session.get("user") or {}).get("id"))
        return Ok(session)

    def refresh_session(self, force: bool = False) -> GatewayResult:
        session = self._load_session()
        if not session or not session.get("refresh_token"):
            return RejectedError("no_session", status=401)
        if not force and int(session.get("expires_at") or 0) - REFRESH_MARGIN_SEC > time.time():
            return Ok(session)
        result = self._send(
            "POST",
            f"{self.url}/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": session["refresh_token"]},
            auth=False,
        )
        if not isinstance(result, Ok):
            return result
        refreshed = result.value or {}
        if not refreshed.get("user"):
            refreshed["user"] = session.get("user") or {}
        return Ok(self._store_token_response(refreshed))

    def sign_out(self) -> None:
        session = self._load_session()
        if session and session.get("access_token") and self.url:
            # Best effort; the local session is dropped either way.
            self._send("POST", f"{self.url}/auth/v1/logout")
        if self.session_file:
            Path(self.session_file).unlink(missing_ok=True)
        logger.info("signed_out")

    def _access_token(self) -> str | None:
        session = self._load_session()
        if not session or not session.get("access_token"):
            return None
        if int(session.get("expires_at") or 0) - REFRESH_MARGIN_SEC <= time.time():
            refreshed = self.refresh_session(force=True)
            if isinstance(refreshed, Ok):
                return refreshed.value.get("access_token")
            logger.warning("session_refresh_failed %s", getattr(refreshed, "message", refreshed))
        return session.get("access_token")

    def is_authenticated(self) -> bool:
        session = self._load_session()
        return bool(session and session.get("access_token"))

    def user_id(self) -> str | None:
        session = self._load_session() or {}
        return (session.get("user") or {}).get("id")

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _headers(self, auth: bool = True, prefer: str | None = None) -> dict[str, str]:
        headers = {"apikey": self.anon_key, "Content-Type": "application/json"}
        token = self._access_token() if auth else None
        headers["Authorization"] = f"Bearer {token or self.anon_key}"
        if self.schema != "public":
            headers["Accept-Profile"] = self.schema
            headers["Content-Profile"] = self.schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        prefer: str | None = None,
        auth: bool = True,
    ) -> GatewayResult:
        try:
            res = self.http.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(auth=auth, prefer=prefer),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            return NetworkError(f"{type(e).__name__}: {e}")
        except requests.RequestException as e:
            return RejectedError(f"request_failed: {e}")
        result = classify_response(res)
        if not isinstance(result, Ok):
            logger.debug("remote_call_failed method=%s url=%s result=%s", method, url, result)
        return result

    def _rest(self, table: str) -> str:
        return f"{self.url}/rest/v1/{table}"

    @staticmethod
    def _single(result: GatewayResult) -> GatewayResult:
        if not isinstance(result, Ok):
            return result
        rows = result.value
        if isinstance(rows, list):
            if not rows:
                return RejectedError("not_found", status=404)
            return Ok(rows[0])
        return Ok(rows)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, table: str, payload: dict[str, Any]) -> GatewayResult:
        body = dict(payload)
        owner = self.user_id()
        if owner:
            body["user_id"] = owner
        return self._single(self._send("POST", self._rest(table), json=body, prefer="return=representation"))

    def update(self, table: str, record_id: str, patch: dict[str, Any]) -> GatewayResult:
        return self._single(
            self._send(
                "PATCH",
                self._rest(table),
                params={"id": f"eq.{record_id}"},
                json=dict(patch),
                prefer="return=representation",
            )
        )

    def delete(self, table: str, record_id: str) -> GatewayResult:
        result = self._send("DELETE", self._rest(table), params={"id": f"eq.{record_id}"}, prefer="return=minimal")
        return Ok(None) if isinstance(result, Ok) else result

    def fetch_all(self, table: str) -> GatewayResult:
        result = self._send("GET", self._rest(table), params={"select": "*", "order": "created_at.asc"})
        if isinstance(result, Ok) and result.value is None:
            return Ok([])
        return result

    def fetch_one(self, table: str, record_id: str) -> GatewayResult:
        """``Ok(record)``, or ``Ok(None)`` when the row no longer exists."""
        result = self._send("GET", self._rest(table), params={"select": "*", "id": f"eq.{record_id}"})
        if not isinstance(result, Ok):
            return result
        rows = result.value or []
        return Ok(rows[0] if rows else None)

    def ping(self) -> bool:
        if not self.url:
            return False
        try:
            res = self.http.get(f"{self.url}/rest/v1/", headers={"apikey": self.anon_key}, timeout=self.timeout)
        except requests.RequestException:
            return False
        return res.status_code < 500

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    def _realtime_url(self) -> str:
        if not self.url:
            return ""
        scheme, _, host = self.url.partition("://")
        ws_scheme = "wss" if scheme == "https" else "ws"
        return f"{ws_scheme}://{host}/realtime/v1/websocket?apikey={self.anon_key}&vsn=1.0.0"

    def subscribe(self, table: str, on_change: Callable[[ChangeEvent], None]) -> SubscriptionHandle:
        return self.socket.add(table, on_change)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.socket.remove(handle)

    def set_reconnect_handler(self, handler: Optional[Callable[[], None]]) -> None:
        self.socket.on_reconnect = handler
