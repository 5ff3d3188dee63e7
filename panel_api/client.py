import asyncio
import json
import logging
from dataclasses import dataclass

import aiohttp

from .errors import AuthError, PanelError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15


@dataclass
class InboundDescriptor:
    id: int
    remark: str = ""
    protocol: str = ""
    port: int | None = None
    enable: bool = True
    tag: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "InboundDescriptor":
        return cls(
            id=data.get("id"),
            remark=data.get("remark") or "",
            protocol=data.get("protocol") or "",
            port=data.get("port"),
            enable=bool(data.get("enable", True)),
            tag=data.get("tag") or "",
        )


def normalize_url(url: str) -> str:
    base = (url or "").rstrip("/")
    if base.endswith("/panel"):
        base = base[: -len("/panel")]
    return base


def client_settings(client_id: str, email: str, expires_at: int) -> str:
    """Return the JSON-encoded ``settings`` field for a single client."""
    client = {
        "id": client_id,
        "email": email,
        "limitIp": 0,
        "totalGB": 0,
        "expiryTime": int(expires_at) * 1000,
        "enable": True,
        "tgId": "",
        "subId": "",
    }
    return json.dumps({"clients": [client]})


def session_expired(status: int, data: dict) -> bool:
    if status in (401, 403):
        return True
    # older panel builds answer 200 with a "please login" message
    msg = str(data.get("msg") or "")
    return not data.get("success") and "login" in msg.lower()


class PanelClient:
    """3X-UI panel client holding its own session cookie.

    The session is established on the first privileged call. When several
    coroutines observe the same stale session only one of them logs in,
    the rest reuse the fresh cookie.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.base_url = normalize_url(base_url)
        self.username = username
        self.password = password
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._cookie: str | None = None
        self._lock = asyncio.Lock()
        self._session: aiohttp.ClientSession | None = None

    @property
    def session_cookie(self) -> str | None:
        return self._cookie

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # cookies are tracked by hand so that the session is explicit
            self._session = aiohttp.ClientSession(
                timeout=self.timeout, cookie_jar=aiohttp.DummyCookieJar()
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def authenticate(self) -> str:
        url = f"{self.base_url}/login"
        logger.info("Logging into panel at %s", url)
        try:
            async with self._http().post(
                url, json={"username": self.username, "password": self.password}
            ) as resp:
                data = await resp.json(content_type=None)
                cookies = resp.cookies
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise AuthError(f"login request failed: {exc}") from exc
        if not isinstance(data, dict) or not data.get("success"):
            raise AuthError(f"login rejected: {data}")
        if not cookies:
            raise AuthError("login succeeded but no session cookie was set")
        self._cookie = "; ".join(f"{k}={m.value}" for k, m in cookies.items())
        logger.info("Logged into panel")
        return self._cookie

    async def _ensure_session(self, stale: str | None = None) -> str:
        async with self._lock:
            if self._cookie is None or self._cookie == stale:
                await self.authenticate()
            return self._cookie

    async def _request(self, method: str, path: str, cookie: str, **kwargs) -> tuple[int, dict]:
        url = f"{self.base_url}{path}"
        headers = {"Cookie": cookie, "Accept": "application/json"}
        try:
            async with self._http().request(method, url, headers=headers, **kwargs) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                return resp.status, data if isinstance(data, dict) else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise PanelError(f"{method} {path} failed: {exc}") from exc

    async def _call(self, method: str, path: str, **kwargs) -> dict:
        cookie = await self._ensure_session()
        for attempt in range(2):
            status, data = await self._request(method, path, cookie, **kwargs)
            if status == 200 and data.get("success"):
                return data
            if attempt == 0 and session_expired(status, data):
                logger.info("Panel session expired, logging in again")
                cookie = await self._ensure_session(stale=cookie)
                continue
            raise PanelError(
                f"{method} {path} failed: status={status} msg={data.get('msg')}"
            )
        raise PanelError(f"{method} {path} failed after re-login")

    async def grant_client(
        self, client_id: str, email: str, inbound_id: int, expires_at: int
    ) -> None:
        """Create an enabled client on ``inbound_id`` valid until ``expires_at``."""
        payload = {
            "id": inbound_id,
            "settings": client_settings(client_id, email, expires_at),
        }
        await self._call("POST", "/panel/api/inbounds/addClient", json=payload)
        logger.info("Granted client %s (%s) on inbound %s", email, client_id, inbound_id)

    async def update_expiry(
        self, client_id: str, email: str, inbound_id: int, expires_at: int
    ) -> None:
        """Overwrite the client's record with a new expiry.

        The existing record is not fetched first, so limits configured on
        the panel side are reset to unlimited.
        """
        payload = {
            "id": inbound_id,
            "settings": client_settings(client_id, email, expires_at),
        }
        await self._call(
            "POST", f"/panel/api/inbounds/updateClient/{client_id}", json=payload
        )
        logger.info("Updated expiry of client %s on inbound %s", client_id, inbound_id)

    async def list_inbounds(self) -> list[InboundDescriptor]:
        try:
            data = await self._call("GET", "/panel/api/inbounds/list")
        except PanelError as exc:
            logger.error("Failed to list inbounds: %s", exc)
            return []
        return [
            InboundDescriptor.from_dict(item)
            for item in data.get("obj") or []
            if isinstance(item, dict)
        ]
