"""
Session manager for the control plane API.

Owns the access/refresh token pair and hands out a valid access token to
any number of concurrent callers. Token fields are only touched under a
short state lock; login and refresh round trips are single-flighted so at
most one of them is outstanding at any time, and callers that queued up
behind it re-check the fresh state instead of logging in again.
"""

import asyncio
import base64
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

import httpx

from errors import AuthError
from models import LoginRequest, LoginResponse, RefreshResponse

logger = logging.getLogger(__name__)


def parse_token_expiry(token: str, fallback_ttl: float, now: Optional[float] = None) -> float:
    """
    Return the expiry (epoch seconds) embedded in a JWT's ``exp`` claim.

    The signature is not verified; the issuing control plane is trusted.
    Tokens that cannot be decoded are assumed valid for ``fallback_ttl``.
    """
    if now is None:
        now = time.time()
    parts = token.split(".")
    if len(parts) != 3:
        return now + fallback_ttl
    payload = parts[1]
    try:
        # base64url without padding
        raw = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        claims = json.loads(raw)
        exp = claims.get("exp") if isinstance(claims, dict) else None
    except (ValueError, TypeError):
        return now + fallback_ttl
    if not isinstance(exp, (int, float)) or isinstance(exp, bool) or exp <= 0:
        return now + fallback_ttl
    return float(exp)


def _fmt(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class SessionManager:
    """Serialized owner of the control plane session"""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        username: str,
        password: str,
        refresh_margin: float = 60.0,
        fallback_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self.refresh_margin = refresh_margin
        self.fallback_ttl = fallback_ttl
        self._clock = clock

        self._access_token = ""
        self._access_exp = 0.0
        self._refresh_token = ""
        self._refresh_exp = 0.0

        # Guards the four token fields; never held across a network call
        self._state_lock = asyncio.Lock()
        # Single-flight gate for login/refresh round trips
        self._auth_lock = asyncio.Lock()

    def _access_valid(self, now: float) -> bool:
        return bool(self._access_token) and now < self._access_exp - self.refresh_margin

    def _refresh_valid(self, now: float) -> bool:
        return bool(self._refresh_token) and now < self._refresh_exp - self.refresh_margin

    async def acquire_token(self) -> str:
        """Return a usable access token, refreshing or logging in as needed."""
        async with self._state_lock:
            if self._access_valid(self._clock()):
                return self._access_token

        async with self._auth_lock:
            async with self._state_lock:
                now = self._clock()
                if self._access_valid(now):
                    # Someone else renewed the session while we waited
                    return self._access_token
                refresh_token = self._refresh_token if self._refresh_valid(now) else None

            if refresh_token:
                try:
                    access_token = await self._refresh(refresh_token)
                except AuthError as e:
                    logger.warning(f"Control plane token refresh failed, attempting login: {e}")
                else:
                    access_exp = parse_token_expiry(access_token, self.fallback_ttl, self._clock())
                    async with self._state_lock:
                        self._access_token = access_token
                        self._access_exp = access_exp
                    logger.debug(f"Control plane token refreshed, expires {_fmt(access_exp)}")
                    return access_token

            access_token, refresh_token = await self._login()
            now = self._clock()
            access_exp = parse_token_expiry(access_token, self.fallback_ttl, now)
            refresh_exp = parse_token_expiry(refresh_token, self.fallback_ttl, now) if refresh_token else 0.0
            async with self._state_lock:
                self._access_token = access_token
                self._access_exp = access_exp
                self._refresh_token = refresh_token
                self._refresh_exp = refresh_exp
            logger.info(
                f"Control plane login successful (access expires {_fmt(access_exp)}, "
                f"refresh expires {_fmt(refresh_exp) if refresh_token else 'n/a'})")
            return access_token

    async def invalidate(self, token: Optional[str] = None) -> None:
        """
        Drop the cached access token so the next acquire re-derives one.

        When ``token`` is given, only that token is dropped; a newer token
        installed by a concurrent refresh is kept.
        """
        async with self._state_lock:
            if token is None or token == self._access_token:
                self._access_token = ""
                self._access_exp = 0.0

    async def _login(self) -> Tuple[str, str]:
        body = LoginRequest(username=self._username, password=self._password).model_dump()
        try:
            response = await self.http_client.post(
                f"{self.base_url}/api/login",
                json=body,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"login request failed: {type(e).__name__}") from e

        if response.status_code != 200:
            raise AuthError(f"login returned status {response.status_code}")
        try:
            result = LoginResponse.model_validate(response.json())
        except ValueError as e:
            raise AuthError("could not decode login response") from e
        return result.access_token, result.refresh_token

    async def _refresh(self, refresh_token: str) -> str:
        try:
            response = await self.http_client.get(
                f"{self.base_url}/api/login/refresh",
                headers={
                    "Authorization": f"Bearer {refresh_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise AuthError(f"refresh request failed: {type(e).__name__}") from e

        if response.status_code != 200:
            raise AuthError(f"refresh returned status {response.status_code}")
        try:
            result = RefreshResponse.model_validate(response.json())
        except ValueError as e:
            raise AuthError("could not decode refresh response") from e
        return result.access_token
