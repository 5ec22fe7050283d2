# -*- coding: utf-8 -*-
"""
Bearer token refresh for lanes.

Labs exchanges the session cookies for a short-lived access token at
/fx/api/auth/session. Tokens are reused for 55 minutes and refreshed in
place on the CredentialRecord.
"""

import logging
from typing import Optional

from config import (
    AUTH_SESSION_URL, VALIDATE_TOKEN_URL, FLOW_REFERER, FLOW_ORIGIN,
    AppConfig, app_config,
)
from error_handler import CredentialError, ProviderHTTPError, TokenExpired
from lanes.executor import RequestExecutor, RequestSpec, response_body
from models import CredentialRecord

logger = logging.getLogger(__name__)


def provider_headers(record: CredentialRecord) -> dict:
    """Headers for aisandbox-pa calls made on behalf of a lane"""
    return {
        "Authorization": f"Bearer {record.bearer_token}",
        "Content-Type": "text/plain;charset=UTF-8",
        "Origin": FLOW_ORIGIN,
        "Referer": FLOW_REFERER,
        "x-browser-channel": "stable",
    }


def labs_headers(record: CredentialRecord) -> dict:
    """Headers for labs.google trpc calls (cookie session plus bearer)"""
    headers = {
        "Content-Type": "application/json",
        "Cookie": record.cookies,
        "Origin": FLOW_ORIGIN,
        "Referer": FLOW_REFERER,
    }
    if record.bearer_token:
        headers["Authorization"] = f"Bearer {record.bearer_token}"
    return headers


class TokenRefresher:
    """Keeps a lane's bearer token fresh"""

    def __init__(self, executor: RequestExecutor, config: AppConfig = None):
        self.executor = executor
        self.config = config or app_config

    async def validate(self, record: CredentialRecord) -> bool:
        """Cheap authenticated call; False when the provider answers 401"""
        spec = RequestSpec(
            method="POST",
            url=VALIDATE_TOKEN_URL,
            headers=provider_headers(record),
            body={},
        )
        try:
            await self.executor.execute(spec, record.name, record.proxy, max_retries=0)
        except TokenExpired:
            return False
        except ProviderHTTPError as e:
            # Anything but 401 says nothing about the token itself
            logger.debug(f"[Auth] {record.name}: validation returned HTTP {e.status_code}")
        return True

    async def refresh(self, record: CredentialRecord) -> str:
        """Exchange the session cookies for a new access token"""
        if not record.cookies:
            raise CredentialError(
                f"Lane '{record.name}' has no cookies to refresh its token",
                {"lane": record.name},
            )

        spec = RequestSpec(
            method="GET",
            url=AUTH_SESSION_URL,
            headers={"Cookie": record.cookies, "Referer": FLOW_REFERER},
        )
        try:
            response = await self.executor.execute(spec, record.name, record.proxy)
        except TokenExpired:
            record.clear_bearer()
            raise

        data = response_body(response)
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            record.clear_bearer()
            raise TokenExpired(body=data, message="Session response has no access_token, cookies are expired")

        record.set_bearer(token)
        logger.info(f"[Auth] {record.name}: access token refreshed")
        return record.bearer_token

    async def ensure_bearer(self, record: CredentialRecord, force: bool = False) -> str:
        """Return a usable bearer token, refreshing it when stale or rejected"""
        if not force and not record.is_stale(self.config.token_max_age_minutes):
            # Pre-fetched tokens (no refresh timestamp) are trusted as-is
            if record.last_refreshed_at is None or not self.config.validate_cached_tokens:
                return record.bearer_token
            if await self.validate(record):
                return record.bearer_token
            logger.info(f"[Auth] {record.name}: cached token rejected, refreshing")

        return await self.refresh(record)
