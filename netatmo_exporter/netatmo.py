"""
Minimal Netatmo API client.

read() is the fetch function handed to the collector, current_token() is the
token accessor used by the token metrics and the token file. Expired access
tokens are renewed with the refresh token before a read.
"""
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from .models import DeviceCollection

BASE_URL = "https://api.netatmo.com"
TOKEN_PATH = "/oauth2/token"
DATA_PATHS = ("/api/getstationsdata", "/api/gethomecoachsdata")

# renew a little before the server would reject the token
EXPIRY_DELTA_S = 10.0

_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
_ZERO_TIME = "0001-01-01T00:00:00Z"
_FRACTION_RE = re.compile(r"\.(\d+)")

class NetatmoError(Exception):
    pass

class NotAuthenticatedError(NetatmoError):
    def __init__(self, msg: str = "not authenticated"):
        super().__init__(msg)

def _parse_time(raw: str | None) -> float | None:
    if not raw or raw == _ZERO_TIME:
        return None
    # RFC3339Nano trims trailing zeros; fromisoformat wants exactly 6 digits before 3.11
    normalized = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw.replace("Z", "+00:00"))
    return datetime.fromisoformat(normalized).timestamp()

def _format_time(ts: float | None) -> str:
    if ts is None:
        return _ZERO_TIME
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")

@dataclass(frozen=True)
class Token:
    """OAuth2 token; serialized in the same JSON layout as golang.org/x/oauth2.Token."""
    access_token: str = ""
    token_type: str = "Bearer"
    refresh_token: str = ""
    expiry: float | None = None  # unix seconds, None = does not expire

    def expired(self, now: float) -> bool:
        return self.expiry is not None and self.expiry - EXPIRY_DELTA_S <= now

    def valid(self, now: float) -> bool:
        return bool(self.access_token) and not self.expired(now)

    def to_json(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["expiry"] = _format_time(self.expiry)
        return payload

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "Token":
        return cls(
            access_token=str(raw.get("access_token") or ""),
            token_type=str(raw.get("token_type") or "Bearer"),
            refresh_token=str(raw.get("refresh_token") or ""),
            expiry=_parse_time(raw.get("expiry")),
        )

class NetatmoClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = BASE_URL,
        http: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.clock = clock
        self._http = http or httpx.Client(base_url=base_url, timeout=_TIMEOUT, follow_redirects=True)
        self._log = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._token: Token | None = None

    def close(self) -> None:
        self._http.close()

    def init_with_token(self, token: Token) -> None:
        with self._lock:
            self._token = token

    def current_token(self) -> Token:
        with self._lock:
            if self._token is None:
                raise NotAuthenticatedError()
            return self._token

    def _valid_token(self) -> Token:
        # one renewal at a time; _lock is never held across the HTTP call
        with self._refresh_lock:
            while True:
                token = self.current_token()
                if token.access_token and not token.expired(self.clock()):
                    return token
                if not token.refresh_token:
                    raise NetatmoError("token expired and no refresh token available")
                renewed = self._refresh(token)
                with self._lock:
                    # a token set meanwhile (e.g. /auth/settoken) wins over the renewal
                    if self._token is token:
                        self._token = renewed
                        return renewed

    def _refresh(self, token: Token) -> Token:
        self._log.info("refreshing token", extra={"event": "token.refresh"})
        try:
            resp = self._http.post(
                TOKEN_PATH,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": token.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise NetatmoError(f"token refresh: {e}") from e
        payload = self._decode(resp, "token refresh")
        access_token = payload.get("access_token")
        if not access_token:
            raise NetatmoError("token refresh: response has no access_token")
        expires_in = payload.get("expires_in")
        return replace(
            token,
            access_token=str(access_token),
            token_type=str(payload.get("token_type") or token.token_type),
            # the server may rotate the refresh token
            refresh_token=str(payload.get("refresh_token") or token.refresh_token),
            expiry=self.clock() + float(expires_in) if expires_in else None,
        )

    def _decode(self, resp: httpx.Response, what: str) -> dict[str, Any]:
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if resp.status_code != 200:
            detail = resp.reason_phrase
            if isinstance(payload, dict):
                err = payload.get("error")
                if isinstance(err, dict):
                    detail = err.get("message") or detail
                elif err:
                    detail = str(payload.get("error_description") or err)
            raise NetatmoError(f"{what}: HTTP {resp.status_code}: {detail}")
        if not isinstance(payload, dict):
            raise NetatmoError(f"{what}: response is not a JSON object")
        return payload

    def read_raw(self) -> list[dict[str, Any]]:
        """Return the "body" objects of all device endpoints, undecoded."""
        token = self._valid_token()
        headers = {"Authorization": f"Bearer {token.access_token}"}
        bodies: list[dict[str, Any]] = []
        for path in DATA_PATHS:
            try:
                resp = self._http.get(path, headers=headers)
            except httpx.HTTPError as e:
                raise NetatmoError(f"{path}: {e}") from e
            payload = self._decode(resp, path)
            body = payload.get("body")
            if not isinstance(body, dict):
                raise NetatmoError(f"{path}: response has no body")
            bodies.append(body)
        return bodies

    def read(self) -> DeviceCollection:
        return DeviceCollection.merge(*(DeviceCollection.from_api(b) for b in self.read_raw()))
