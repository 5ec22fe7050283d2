# -*- coding: utf-8 -*-
"""
flow-lanes - Operator API

Features:
- Lane (credential) management
- Token pool loading and status
- Rate limit statistics
- Generate / check status / poll / update scene / upload image
- Project, scene and proxy helpers
- Multi-lane prompt chains
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config import (
    JobKind, OperationStatus, VideoAspectRatio, DEFAULT_TEXT_SEEDS, app_config,
)
from lanes import LaneService, LanePlan, parse_prompt_file, random_seeds
from lanes.prompts import step_from_text
from models import GenerationJob, Operation, SceneClip

APP_VERSION = "1.0.0"

logging.basicConfig(
    level=logging.DEBUG if app_config.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ============ Request Models ============

class LaneInput(BaseModel):
    name: str
    cookies: str = ""
    session_token: str = ""
    authorization: Optional[str] = None
    proxy: Optional[str] = None
    project_id: Optional[str] = None
    scene_id: Optional[str] = None


class LoadPoolRequest(BaseModel):
    names: List[str]


class GenerateRequest(BaseModel):
    kind: JobKind = JobKind.NEW
    prompt: str
    seeds: Optional[List[int]] = None
    anchor_media_ids: List[str] = Field(default_factory=list)
    project_id: Optional[str] = None
    scene_id: Optional[str] = None
    aspect_ratio: VideoAspectRatio = VideoAspectRatio.LANDSCAPE
    scene_ids: List[str] = Field(default_factory=list)
    additional_duration_sec: Optional[int] = None
    token_name: Optional[str] = None


class OperationInput(BaseModel):
    operation_name: str
    scene_id: Optional[str] = None
    status: OperationStatus = OperationStatus.PENDING


class StatusRequest(BaseModel):
    operations: List[OperationInput]
    token_name: Optional[str] = None


class ClipInput(BaseModel):
    clip_id: str
    start_time: str
    end_time: str
    prompt: str = ""


class UpdateSceneRequest(BaseModel):
    project_id: str
    scene_id: str
    clips: List[ClipInput] = Field(default_factory=list)
    media_id: str
    prompt: str = ""
    token_name: Optional[str] = None


class UploadImageRequest(BaseModel):
    raw_image: str
    cropped_image: Optional[str] = None
    aspect_ratio: VideoAspectRatio = VideoAspectRatio.LANDSCAPE
    token_name: Optional[str] = None


class CreateProjectRequest(BaseModel):
    token_name: Optional[str] = None


class CreateSceneRequest(BaseModel):
    project_id: Optional[str] = None
    token_name: Optional[str] = None


class ProxyCheckRequest(BaseModel):
    proxy: Optional[str] = None
    token_name: Optional[str] = None


class ChainLaneInput(BaseModel):
    lane: str
    project_id: Optional[str] = None
    scene_id: Optional[str] = None
    prompts: List[str] = Field(default_factory=list)
    prompt_text: Optional[str] = None
    clips: Optional[List[ClipInput]] = None


class RunChainsRequest(BaseModel):
    lanes: List[ChainLaneInput]


def _clips(items: Optional[List[ClipInput]]) -> Optional[List[SceneClip]]:
    if items is None:
        return None
    return [SceneClip(c.clip_id, c.start_time, c.end_time, c.prompt) for c in items]


def _operations(items: List[OperationInput]) -> List[Operation]:
    return [Operation(op.operation_name, op.scene_id, op.status) for op in items]


# ============ Application Setup ============

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    if getattr(app.state, "service", None) is None:
        app.state.service = LaneService()
    logger.info(f"[App] Started flow-lanes {APP_VERSION}")

    yield

    await app.state.service.aclose()
    logger.info("[App] Shutdown complete")


app = FastAPI(
    title="flow-lanes",
    description="Multi-account orchestrator for Labs Flow / Veo3 video generation",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service(request: Request) -> LaneService:
    return request.app.state.service


@app.get("/api/version")
def get_version():
    return {"app": "flow-lanes", "version": APP_VERSION}


# ============ Lanes ============

@app.get("/api/lanes")
def list_lanes(service: LaneService = Depends(get_service)):
    return service.list_lanes()


@app.post("/api/lanes")
def save_lane(lane: LaneInput, service: LaneService = Depends(get_service)):
    return service.save_lane({
        "name": lane.name,
        "cookies": lane.cookies,
        "sessionToken": lane.session_token,
        "authorization": lane.authorization,
        "proxy": lane.proxy,
        "projectId": lane.project_id,
        "sceneId": lane.scene_id,
    })


@app.delete("/api/lanes/{name}")
def delete_lane(name: str, service: LaneService = Depends(get_service)):
    return service.delete_lane(name)


@app.post("/api/load-token-pool")
def load_token_pool(body: LoadPoolRequest, service: LaneService = Depends(get_service)):
    return service.load_pool(body.names)


@app.get("/api/token-pool-status")
def token_pool_status(service: LaneService = Depends(get_service)):
    return service.pool_status()


@app.get("/api/rate-limit-stats")
def rate_limit_stats(service: LaneService = Depends(get_service)):
    return service.rate_limit_stats()


@app.post("/api/reset-rate-limit-stats")
def reset_rate_limit_stats(service: LaneService = Depends(get_service)):
    return service.reset_rate_limit_stats()


# ============ Generation ============

@app.post("/api/generate")
async def generate(body: GenerateRequest, service: LaneService = Depends(get_service)):
    seeds = body.seeds
    if not seeds and body.kind != JobKind.EXTEND:
        seeds = list(DEFAULT_TEXT_SEEDS) if body.kind == JobKind.TEXT_ONLY else random_seeds(app_config.variant_count)

    job = GenerationJob(
        kind=body.kind,
        prompt=body.prompt,
        seeds=seeds or [],
        project_id=body.project_id,
        scene_id=body.scene_id,
        anchor_media_ids=body.anchor_media_ids,
        aspect_ratio=body.aspect_ratio,
        scene_ids=body.scene_ids,
        additional_duration_sec=body.additional_duration_sec,
    )
    # Fingerprint the request as sent, before seeds and lane are filled in
    return await service.generate(job, body.token_name, dedup_payload=body.model_dump(mode="json"))


@app.post("/api/check-status")
async def check_status(body: StatusRequest, service: LaneService = Depends(get_service)):
    return await service.check_status(_operations(body.operations), body.token_name)


@app.post("/api/poll")
async def poll(body: StatusRequest, service: LaneService = Depends(get_service)):
    return await service.poll(_operations(body.operations), body.token_name)


@app.post("/api/update-scene")
async def update_scene(body: UpdateSceneRequest, service: LaneService = Depends(get_service)):
    return await service.append_clip(
        body.project_id, body.scene_id, _clips(body.clips), body.media_id, body.prompt, body.token_name
    )


@app.post("/api/upload-image")
async def upload_image(body: UploadImageRequest, service: LaneService = Depends(get_service)):
    return await service.upload_image(body.raw_image, body.cropped_image, body.aspect_ratio, body.token_name)


# ============ Projects & proxies ============

@app.post("/api/create-project")
async def create_project(body: CreateProjectRequest, service: LaneService = Depends(get_service)):
    return await service.create_project(body.token_name)


@app.post("/api/create-scene")
async def create_scene(body: CreateSceneRequest, service: LaneService = Depends(get_service)):
    return await service.create_scene(body.project_id, body.token_name)


@app.post("/api/test-proxy")
async def check_proxy(body: ProxyCheckRequest, service: LaneService = Depends(get_service)):
    return await service.check_proxy(body.proxy, body.token_name)


# ============ Chains ============

@app.post("/api/chains/run")
async def run_chains(body: RunChainsRequest, service: LaneService = Depends(get_service)):
    plans = []
    for item in body.lanes:
        steps = [step_from_text(p) for p in item.prompts if p.strip()]
        if item.prompt_text:
            steps.extend(parse_prompt_file(item.prompt_text))

        try:
            state = await service.prepare_state(item.lane, item.project_id, item.scene_id, _clips(item.clips))
        except Exception as e:
            return service.handler.to_result(e, {"action": "run_chains", "lane": item.lane})
        plans.append(LanePlan(lane=item.lane, steps=steps, state=state))

    return await service.run_chains(plans)


# ============ Main Entry Point ============

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=app_config.host,
        port=app_config.port,
        reload=app_config.debug,
    )
