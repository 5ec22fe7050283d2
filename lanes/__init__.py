# -*- coding: utf-8 -*-
"""
Multi-lane orchestration for the Labs Flow / Veo3 generation API

Provides:
- Token pool with round-robin and by-name lane selection
- Rate-limited request executor with per-lane proxies
- Duplicate submission guard
- Job submitter, status poller and scene/clip updater
- Chain runner for prompt sequences across lanes
"""

from .pool import TokenPool
from .proxy import ProxyConfig, parse_proxy, mask_proxy
from .executor import RequestExecutor, RequestSpec, RateLimitStats
from .dedup import RequestDeduplicator
from .auth import TokenRefresher
from .submitter import JobSubmitter, random_seeds
from .poller import StatusPoller
from .scene import SceneUpdater, next_clip_window, build_clip
from .uploader import ImageUploader
from .prompts import ChainStep, parse_prompt_file
from .chain import ChainRunner, ChainState, LanePlan
from .service import LaneService

__all__ = [
    # Selection
    'TokenPool',

    # Transport
    'ProxyConfig',
    'parse_proxy',
    'mask_proxy',
    'RequestExecutor',
    'RequestSpec',
    'RateLimitStats',
    'RequestDeduplicator',
    'TokenRefresher',

    # Jobs
    'JobSubmitter',
    'random_seeds',
    'StatusPoller',
    'SceneUpdater',
    'next_clip_window',
    'build_clip',
    'ImageUploader',

    # Chains
    'ChainStep',
    'parse_prompt_file',
    'ChainRunner',
    'ChainState',
    'LanePlan',
    'LaneService',
]
