# -*- coding: utf-8 -*-
"""
Status poller for in-flight generation operations.

All operations of one job are checked together on each tick until every
variant is terminal or the attempt budget runs out.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List

import httpx

from config import CHECK_STATUS_URL, OperationStatus, PollOutcome, AppConfig, app_config
from error_handler import FlowError, TokenExpired
from lanes.auth import TokenRefresher, provider_headers
from lanes.executor import RequestExecutor, RequestSpec, response_body
from models import CredentialRecord, Operation, PollResult

logger = logging.getLogger(__name__)


class StatusPoller:
    """
    Batch state machine: PENDING -> ACTIVE -> SUCCESSFUL | FAILED.

    A FAILED variant whose error mentions HIGH_TRAFFIC is not terminal; the
    next tick waits twice the interval. The first SUCCESSFUL variant seen
    becomes the selected result.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        refresher: TokenRefresher,
        config: AppConfig = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.executor = executor
        self.refresher = refresher
        self.config = config or app_config
        self._sleep = sleep

    async def check_status(self, operations: List[Operation], credential: CredentialRecord) -> List[Operation]:
        """One status tick for a batch of operations"""
        await self.refresher.ensure_bearer(credential)
        spec = RequestSpec(
            method="POST",
            url=CHECK_STATUS_URL,
            headers=provider_headers(credential),
            body={"operations": [op.to_wire() for op in operations]},
        )
        response = await self.executor.execute(spec, credential.name, credential.proxy)
        data = response_body(response)
        raw_operations = data.get("operations", []) if isinstance(data, dict) else []

        fallback_scenes = {op.operation_name: op.scene_id for op in operations}
        updated = []
        for raw in raw_operations:
            name = (raw.get("operation") or {}).get("name")
            updated.append(Operation.from_wire(raw, fallback_scene_id=fallback_scenes.get(name)))
        return updated

    async def poll(
        self,
        operations: List[Operation],
        credential: CredentialRecord,
        max_attempts: int = None,
        interval_sec: float = None,
    ) -> PollResult:
        """Poll until every variant is terminal or the attempt budget is spent"""
        max_attempts = self.config.poll_max_attempts if max_attempts is None else max_attempts
        interval_sec = self.config.poll_interval_sec if interval_sec is None else interval_sec

        current = list(operations)
        total = len(current)
        selected_media_id = None
        video_urls: List[str] = []
        success_count = failure_count = 0
        attempt = 0

        logger.info(f"[Poll] {credential.name}: polling {total} operation(s), up to {max_attempts} attempts")

        while attempt < max_attempts:
            attempt += 1
            wait = interval_sec

            try:
                ticked = await self.check_status(current, credential)
            except TokenExpired:
                raise
            except (FlowError, httpx.HTTPError) as e:
                logger.warning(f"[Poll] {credential.name}: attempt {attempt} failed: {e}")
                ticked = None

            if ticked:
                current = ticked
                success_count = failure_count = 0
                high_traffic = False

                for op in current:
                    if op.status == OperationStatus.SUCCESSFUL:
                        success_count += 1
                        if op.video_url and op.video_url not in video_urls:
                            video_urls.append(op.video_url)
                        if selected_media_id is None and op.media_id:
                            selected_media_id = op.media_id
                            logger.info(f"[Poll] {credential.name}: selected media {op.media_id}")
                    elif op.is_high_traffic:
                        high_traffic = True
                    elif op.status == OperationStatus.FAILED:
                        failure_count += 1

                logger.info(
                    f"[Poll] {credential.name}: attempt {attempt}/{max_attempts} - "
                    f"{success_count} succeeded, {failure_count} failed of {total}"
                )

                if success_count + failure_count >= total:
                    break

                if high_traffic:
                    wait = interval_sec * 2
                    logger.warning(f"[Poll] {credential.name}: HIGH_TRAFFIC, next check in {wait:.0f}s")

            if attempt < max_attempts:
                await self._sleep(wait)

        if selected_media_id:
            outcome = PollOutcome.SUCCESSFUL
        elif total and success_count + failure_count >= total:
            outcome = PollOutcome.FAILED
        else:
            outcome = PollOutcome.TIMED_OUT

        if outcome != PollOutcome.SUCCESSFUL:
            logger.warning(f"[Poll] {credential.name}: finished {outcome.value} after {attempt} attempt(s)")

        return PollResult(
            outcome=outcome,
            operations=current,
            selected_media_id=selected_media_id,
            video_urls=video_urls,
            attempts=attempt,
            success_count=success_count,
            failure_count=failure_count,
        )
