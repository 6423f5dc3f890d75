import asyncio
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx

from services.twitch.api.errors import HelixError
from services.twitch.models.events import normalize_channel
from shared.logging.logger import get_logger

log = get_logger("twitch.helix")


class TwitchHelixClient:
    """
    Thin async client for the Twitch Helix REST API.

    Used for the moderation operations Twitch no longer accepts as IRC
    chat commands (timeouts, moderator lists) and for live status
    lookups. One httpx.AsyncClient is kept for the client's lifetime.
    """

    BASE_URL = "https://api.twitch.tv/helix"
    PAGE_SIZE = 100

    def __init__(
        self,
        *,
        client_id: str,
        token: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.token = self._strip_oauth_prefix(token)
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._user_ids: Dict[str, str] = {}
        self._token_user_id: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.token)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.BASE_URL,
                timeout=self._timeout,
                transport=self._transport,
                headers={
                    "Client-Id": self.client_id,
                    "Authorization": f"Bearer {self.token}",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.configured:
            raise HelixError("Twitch Helix API is not configured (client id / token missing)")

        try:
            response = await self._http().request(method, path, params=params, json=json)
            response.raise_for_status()
        except asyncio.CancelledError:
            raise
        except httpx.HTTPStatusError as e:
            detail = e.response.text.strip()
            log.error(
                f"Helix {method} {path} failed: "
                f"{e.response.status_code} {e.response.reason_phrase} {detail}"
            )
            raise HelixError(
                f"Helix {method} {path} failed with {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            log.error(f"Helix {method} {path} failed: {e}")
            raise HelixError(f"Helix {method} {path} failed: {e}") from e

        if response.status_code == 204 or not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def get_users(self, logins: Iterable[str]) -> Dict[str, str]:
        """
        Resolve logins to user ids. Unknown logins are left out.
        """
        wanted = [normalize_channel(login) for login in logins]
        missing = [login for login in wanted if login and login not in self._user_ids]

        for start in range(0, len(missing), self.PAGE_SIZE):
            batch = missing[start:start + self.PAGE_SIZE]
            data = await self._request("GET", "/users", params=[("login", login) for login in batch])
            for user in data.get("data", []):
                self._user_ids[user["login"].lower()] = user["id"]

        return {login: self._user_ids[login] for login in wanted if login in self._user_ids}

    async def get_user_id(self, login: str) -> str:
        login = normalize_channel(login)
        users = await self.get_users([login])
        if login not in users:
            raise HelixError(f"Unknown Twitch user: {login}")
        return users[login]

    async def get_token_user(self) -> str:
        """Id of the account the token belongs to."""
        if self._token_user_id is None:
            data = await self._request("GET", "/users")
            users = data.get("data", [])
            if not users:
                raise HelixError("Token does not resolve to a Twitch user")
            self._token_user_id = users[0]["id"]
        return self._token_user_id

    async def timeout_user(
        self,
        channel: str,
        username: str,
        seconds: int,
        reason: Optional[str] = None,
    ) -> None:
        broadcaster_id = await self.get_user_id(channel)
        user_id = await self.get_user_id(username)
        moderator_id = await self.get_token_user()

        body: Dict[str, Any] = {"user_id": user_id, "duration": int(seconds)}
        if reason:
            body["reason"] = reason

        await self._request(
            "POST",
            "/moderation/bans",
            params={"broadcaster_id": broadcaster_id, "moderator_id": moderator_id},
            json={"data": body},
        )
        log.info(f"[#{normalize_channel(channel)}] Timed out {username} for {seconds}s")

    async def get_moderators(self, channel: str) -> List[str]:
        broadcaster_id = await self.get_user_id(channel)
        mods: List[str] = []
        cursor: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"broadcaster_id": broadcaster_id, "first": self.PAGE_SIZE}
            if cursor:
                params["after"] = cursor
            data = await self._request("GET", "/moderation/moderators", params=params)
            mods.extend(entry["user_login"] for entry in data.get("data", []))

            cursor = (data.get("pagination") or {}).get("cursor")
            if not cursor:
                break

        return mods

    async def get_live_channels(self, logins: Iterable[str]) -> Set[str]:
        logins = [normalize_channel(login) for login in logins if login]
        live: Set[str] = set()

        for start in range(0, len(logins), self.PAGE_SIZE):
            batch = logins[start:start + self.PAGE_SIZE]
            params = [("user_login", login) for login in batch] + [("first", str(self.PAGE_SIZE))]
            data = await self._request("GET", "/streams", params=params)
            for stream in data.get("data", []):
                if stream.get("type") == "live":
                    live.add(stream["user_login"].lower())

        return live

    # ------------------------------------------------------------------ #

    @staticmethod
    def _strip_oauth_prefix(token: str) -> str:
        token = (token or "").strip()
        if token.startswith("oauth:"):
            return token[len("oauth:"):]
        return token


__all__ = ["TwitchHelixClient"]
