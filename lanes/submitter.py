# -*- coding: utf-8 -*-
"""
Generation job submitter.

Builds the provider batch request for a GenerationJob (one request per
seed, except EXTEND) and turns the response into Operations.
"""

import logging
import random
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from config import (
    GENERATE_URLS, VIDEO_MODEL_KEYS, BATCH_LOG_URL,
    CONTINUE_START_FRAME, CONTINUE_END_FRAME, MAX_SEED,
    FLOW_TOOL_NAME, FLOW_PAYGATE_TIER, FLOW_ORIGIN,
    JobKind, AppConfig, app_config,
)
from error_handler import (
    DuplicateRequest, FlowError, InvalidJob, ProviderHTTPError, SubmissionFailed, TokenExpired,
)
from lanes.auth import TokenRefresher, labs_headers, provider_headers
from lanes.dedup import RequestDeduplicator, fingerprint
from lanes.executor import RequestExecutor, RequestSpec, response_body
from models import CredentialRecord, GenerationJob, Operation

logger = logging.getLogger(__name__)

# Prompt box mode reported in analytics events, per job kind
ANALYTICS_MODES = {
    JobKind.NEW: "TEXT_TO_VIDEO",
    JobKind.TEXT_ONLY: "TEXT_TO_VIDEO",
    JobKind.CONTINUE: "EXTEND_VIDEO",
    JobKind.EXTEND: "EXTEND_VIDEO",
    JobKind.START_END: "IMAGE_TO_VIDEO",
}


def random_seeds(count: int) -> List[int]:
    return [random.randint(0, MAX_SEED) for _ in range(count)]


def session_id() -> str:
    return f";{int(time.time() * 1000)}"


def client_context(project_id: Optional[str]) -> Dict[str, Any]:
    context = {
        "sessionId": session_id(),
        "tool": FLOW_TOOL_NAME,
        "userPaygateTier": FLOW_PAYGATE_TIER,
    }
    if project_id:
        context["projectId"] = project_id
    return context


def build_requests(job: GenerationJob) -> List[Dict[str, Any]]:
    """Per-variant request entries for a batch endpoint"""
    if job.kind == JobKind.EXTEND:
        request = {
            "textInput": {"prompt": job.prompt},
            "videoInput": {"mediaId": job.anchor_media_ids[0]},
        }
        if job.additional_duration_sec is not None:
            request["additionalDurationSec"] = job.additional_duration_sec
        return [request]

    model_key = job.video_model_key or VIDEO_MODEL_KEYS[job.kind]
    requests = []
    for index, seed in enumerate(job.seeds):
        request = {
            "aspectRatio": job.aspect_ratio.value,
            "seed": seed,
            "textInput": {"prompt": job.prompt},
            "videoModelKey": model_key,
        }

        if job.kind == JobKind.NEW:
            request["metadata"] = {"sceneId": job.scene_id}

        elif job.kind == JobKind.CONTINUE:
            request["videoInput"] = {
                "mediaId": job.anchor_media_ids[0],
                "startFrameIndex": CONTINUE_START_FRAME,
                "endFrameIndex": CONTINUE_END_FRAME,
            }
            request["metadata"] = {"sceneId": job.scene_id}

        elif job.kind == JobKind.START_END:
            # Provider rejects repeated scene ids inside one batch
            request["startImage"] = {"mediaId": job.anchor_media_ids[0]}
            request["endImage"] = {"mediaId": job.anchor_media_ids[1]}
            request["metadata"] = {"sceneId": str(uuid.uuid4())}

        elif job.kind == JobKind.TEXT_ONLY:
            if job.scene_ids:
                request["metadata"] = {"sceneId": job.scene_ids[index]}

        requests.append(request)
    return requests


def build_body(job: GenerationJob) -> Dict[str, Any]:
    return {
        "clientContext": client_context(job.project_id),
        "requests": build_requests(job),
    }


def parse_operations(data: Any, requests: List[Dict[str, Any]]) -> List[Operation]:
    """Operations from a submit response, scene ids falling back to the request's"""
    raw_operations = data.get("operations", []) if isinstance(data, dict) else []
    operations = []
    for index, raw in enumerate(raw_operations):
        fallback = None
        if index < len(requests):
            fallback = (requests[index].get("metadata") or {}).get("sceneId")
        operations.append(Operation.from_wire(raw, fallback_scene_id=fallback))
    return operations


class JobSubmitter:
    """Submits GenerationJobs for a lane"""

    def __init__(
        self,
        executor: RequestExecutor,
        refresher: TokenRefresher,
        deduplicator: RequestDeduplicator,
        config: AppConfig = None,
    ):
        self.executor = executor
        self.refresher = refresher
        self.deduplicator = deduplicator
        self.config = config or app_config

    async def submit(
        self,
        job: GenerationJob,
        credential: CredentialRecord,
        dedup_payload: Optional[Dict[str, Any]] = None,
    ) -> List[Operation]:
        """
        Send one job and return its operations.

        dedup_payload replaces the job's own fingerprint fields. The operator
        API passes the request as it was received, before seeds and lane
        were filled in, so a repeated click is caught.

        Raises:
            InvalidJob: job fields don't fit its kind
            DuplicateRequest: identical submission within the dedup window
            TokenExpired: provider answered 401
            SubmissionFailed: any other provider error
        """
        errors = job.validate()
        if errors:
            raise InvalidJob(f"Invalid {job.kind.value} job: {'; '.join(errors)}", {"errors": errors})

        payload = dedup_payload if dedup_payload is not None else job.fingerprint_payload(credential.name)
        if self.deduplicator.is_duplicate(payload):
            raise DuplicateRequest(fingerprint(payload))

        await self.refresher.ensure_bearer(credential)

        body = build_body(job)
        if self.config.send_analytics:
            await self.send_analytics(job, credential)

        spec = RequestSpec(
            method="POST",
            url=GENERATE_URLS[job.kind],
            headers=provider_headers(credential),
            body=body,
        )
        logger.info(
            f"[Submit] {credential.name}: {job.kind.value} job {job.job_id[:8]} "
            f"with {len(body['requests'])} variant(s)"
        )

        try:
            response = await self.executor.execute(spec, credential.name, credential.proxy)
        except TokenExpired:
            raise
        except ProviderHTTPError as e:
            raise SubmissionFailed(
                e.status_code,
                e.body,
                f"{job.kind.value} submission failed with HTTP {e.status_code}",
                {"job_id": job.job_id, "lane": credential.name},
            ) from e

        data = response_body(response)
        operations = parse_operations(data, body["requests"])
        if not operations:
            raise SubmissionFailed(
                response.status_code,
                data,
                "Provider response has no operations",
                {"job_id": job.job_id, "lane": credential.name},
            )

        logger.info(f"[Submit] {credential.name}: job {job.job_id[:8]} -> {len(operations)} operation(s)")
        return operations

    async def send_analytics(self, job: GenerationJob, credential: CredentialRecord):
        """Best-effort usage events, as the web client sends before generating"""
        query_id = str(uuid.uuid4())
        mode = ANALYTICS_MODES[job.kind]
        headers = labs_headers(credential)
        headers["Referer"] = f"{FLOW_ORIGIN}/fx/tools/flow"

        for event in ("VIDEOFX_CREATE_VIDEO", "PINHOLE_GENERATE_VIDEO"):
            body = {
                "json": {
                    "appEvents": [{
                        "event": event,
                        "eventMetadata": {"sessionId": session_id()},
                        "eventProperties": [
                            {"key": "TOOL_NAME", "stringValue": FLOW_TOOL_NAME},
                            {"key": "QUERY_ID", "stringValue": query_id},
                            {"key": "PINHOLE_VIDEO_ASPECT_RATIO", "stringValue": job.aspect_ratio.value},
                            {"key": "G1_PAYGATE_TIER", "stringValue": FLOW_PAYGATE_TIER},
                            {"key": "PINHOLE_PROMPT_BOX_MODE", "stringValue": mode},
                            {"key": "IS_DESKTOP"},
                        ],
                        "activeExperiments": [],
                        "eventTime": datetime.utcnow().isoformat() + "Z",
                    }]
                }
            }
            spec = RequestSpec(method="POST", url=BATCH_LOG_URL, headers=headers, body=body)
            try:
                await self.executor.execute(spec, credential.name, credential.proxy, max_retries=0)
            except (FlowError, httpx.HTTPError) as e:
                logger.warning(f"[Submit] {credential.name}: analytics event {event} failed (non-critical): {e}")
