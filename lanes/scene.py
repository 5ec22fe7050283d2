# -*- coding: utf-8 -*-
"""
Scene/clip updater.

A scene's clip list is replaced as a whole on the provider
(updateMasks: ["clips"]). Callers keep the returned list as the new local
copy; its last clip is the anchor for the next CONTINUE job.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from config import (
    UPDATE_SCENE_URL, GET_PROJECT_URL, CREATE_PROJECT_URL, CREATE_SCENE_URL, FLOW_TOOL_NAME,
    CLIP_DURATION_SEC, CLIP_EPSILON_SEC,
)
from error_handler import ProviderHTTPError, SceneUpdateFailed, TokenExpired
from lanes.auth import TokenRefresher, labs_headers
from lanes.executor import RequestExecutor, RequestSpec, response_body
from models import CredentialRecord, SceneClip

logger = logging.getLogger(__name__)


def parse_seconds(value: Optional[str]) -> Decimal:
    """'10.5s' -> Decimal('10.5'); anything unparseable counts as 0"""
    if not value:
        return Decimal("0")
    try:
        return Decimal(str(value).strip().rstrip("s"))
    except InvalidOperation:
        logger.warning(f"[Scene] Unparseable clip time {value!r}, treating as 0s")
        return Decimal("0")


def format_seconds(value: Decimal) -> str:
    return f"{value:.9f}s"


def next_clip_window(
    existing_clips: List[SceneClip],
    duration: Decimal = CLIP_DURATION_SEC,
) -> Tuple[str, str]:
    """(start, end) for a clip appended after the current last clip"""
    last_end = parse_seconds(existing_clips[-1].end_time) if existing_clips else Decimal("0")
    start = last_end + CLIP_EPSILON_SEC
    end = last_end + duration + CLIP_EPSILON_SEC
    return format_seconds(start), format_seconds(end)


def build_clip(existing_clips: List[SceneClip], media_id: str, prompt: str) -> SceneClip:
    start, end = next_clip_window(existing_clips)
    return SceneClip(clip_id=media_id, start_time=start, end_time=end, prompt=prompt)


class SceneUpdater:
    """Reads and writes a project's scene clip list"""

    def __init__(self, executor: RequestExecutor, refresher: TokenRefresher):
        self.executor = executor
        self.refresher = refresher

    async def append_clip(
        self,
        project_id: str,
        scene_id: str,
        existing_clips: List[SceneClip],
        new_clip: SceneClip,
        credential: CredentialRecord,
    ) -> List[SceneClip]:
        """
        Append new_clip after the last existing clip and push the full list.

        The clip's times are recomputed from existing_clips. existing_clips
        itself is never modified, so on failure the caller's state is intact.
        """
        start, end = next_clip_window(existing_clips)
        clip = SceneClip(clip_id=new_clip.clip_id, start_time=start, end_time=end, prompt=new_clip.prompt)
        updated = list(existing_clips) + [clip]

        await self.refresher.ensure_bearer(credential)
        spec = RequestSpec(
            method="POST",
            url=UPDATE_SCENE_URL,
            headers=labs_headers(credential),
            body={
                "json": {
                    "projectId": project_id,
                    "scene": {"sceneId": scene_id, "clips": [c.to_wire() for c in updated]},
                    "toolName": FLOW_TOOL_NAME,
                    "updateMasks": ["clips"],
                }
            },
        )

        try:
            await self.executor.execute(spec, credential.name, credential.proxy)
        except TokenExpired:
            raise
        except ProviderHTTPError as e:
            raise SceneUpdateFailed(
                e.status_code,
                e.body,
                f"Scene update failed with HTTP {e.status_code}",
                {"project_id": project_id, "scene_id": scene_id, "clip_id": clip.clip_id},
            ) from e

        logger.info(
            f"[Scene] {credential.name}: added clip {clip.clip_id} "
            f"({clip.start_time} - {clip.end_time}), scene now has {len(updated)} clip(s)"
        )
        return updated

    async def fetch_scene_clips(
        self,
        project_id: str,
        scene_id: str,
        credential: CredentialRecord,
    ) -> List[SceneClip]:
        """Current clip list of one scene, read via project.get"""
        await self.refresher.ensure_bearer(credential)
        spec = RequestSpec(
            method="POST",
            url=GET_PROJECT_URL,
            headers=labs_headers(credential),
            body={"json": {"projectId": project_id, "toolName": FLOW_TOOL_NAME}},
        )
        response = await self.executor.execute(spec, credential.name, credential.proxy)
        data = response_body(response)

        project = (((data or {}).get("result") or {}).get("data") or {}).get("json") if isinstance(data, dict) else None
        if not project:
            raise ProviderHTTPError(response.status_code, data, "No project data in response")

        for scene in project.get("scenes") or []:
            if scene.get("sceneId") == scene_id:
                clips = [SceneClip.from_wire(c) for c in scene.get("clips") or []]
                logger.info(f"[Scene] {credential.name}: scene {scene_id} has {len(clips)} clip(s)")
                return clips

        raise ProviderHTTPError(response.status_code, None, f"Scene {scene_id} not found in project {project_id}")

    async def _trpc_json(self, url: str, payload: dict, credential: CredentialRecord) -> dict:
        """POST a trpc call and return result.data.json"""
        await self.refresher.ensure_bearer(credential)
        spec = RequestSpec(method="POST", url=url, headers=labs_headers(credential), body={"json": payload})
        response = await self.executor.execute(spec, credential.name, credential.proxy)
        data = response_body(response)
        result = (((data or {}).get("result") or {}).get("data") or {}).get("json") if isinstance(data, dict) else None
        if not isinstance(result, dict):
            raise ProviderHTTPError(response.status_code, data, f"No result data from {url.rsplit('/', 1)[-1]}")
        return result

    async def create_project(self, credential: CredentialRecord) -> str:
        """New Flow project on the lane's account; returns its id"""
        result = await self._trpc_json(CREATE_PROJECT_URL, {"toolName": FLOW_TOOL_NAME}, credential)
        project_id = result.get("projectId")
        if not project_id:
            raise ProviderHTTPError(200, result, "Project created without a projectId")
        logger.info(f"[Scene] {credential.name}: created project {project_id}")
        return project_id

    async def create_scene(self, project_id: str, credential: CredentialRecord) -> str:
        """Empty scene in project_id; returns its id"""
        result = await self._trpc_json(
            CREATE_SCENE_URL, {"projectId": project_id, "toolName": FLOW_TOOL_NAME}, credential
        )
        scene_id = result.get("sceneId")
        if not scene_id:
            raise ProviderHTTPError(200, result, "Scene created without a sceneId")
        logger.info(f"[Scene] {credential.name}: created scene {scene_id} in project {project_id}")
        return scene_id
