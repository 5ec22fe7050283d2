# -*- coding: utf-8 -*-
"""
Image upload (start/end anchors).

The web client uploads each image twice through v1:uploadUserImage: the raw
image first, then the version cropped to the video aspect ratio. The
cropped upload's media id is the anchor used by START_END jobs. Cropping
itself happens before this module is called.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Optional, Union

from config import UPLOAD_IMAGE_URL, UPLOAD_TOOL_NAME, FLOW_ORIGIN, VideoAspectRatio
from error_handler import ProviderHTTPError, TokenExpired, UploadFailed
from lanes.auth import TokenRefresher
from lanes.executor import RequestExecutor, RequestSpec, response_body
from lanes.submitter import session_id
from models import CredentialRecord

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    media_id: str
    width: Optional[int] = None
    height: Optional[int] = None

    def to_dict(self):
        return {"mediaGenerationId": self.media_id, "width": self.width, "height": self.height}


def clean_base64(image: Union[str, bytes]) -> str:
    """Base64 payload without any data: URL prefix"""
    if isinstance(image, bytes):
        return base64.b64encode(image).decode("ascii")
    if "base64," in image:
        return image.split("base64,", 1)[1]
    return image


class ImageUploader:

    def __init__(self, executor: RequestExecutor, refresher: TokenRefresher):
        self.executor = executor
        self.refresher = refresher

    async def upload_image(
        self,
        image: Union[str, bytes],
        credential: CredentialRecord,
        aspect_ratio: VideoAspectRatio = VideoAspectRatio.LANDSCAPE,
        step: str = "raw",
    ) -> UploadResult:
        await self.refresher.ensure_bearer(credential)
        spec = RequestSpec(
            method="POST",
            url=UPLOAD_IMAGE_URL,
            headers={
                "Authorization": f"Bearer {credential.bearer_token}",
                "Content-Type": "application/json",
                "Referer": f"{FLOW_ORIGIN}/fx/tools/flow",
            },
            body={
                "imageInput": {
                    "rawImageBytes": clean_base64(image),
                    "mimeType": "image/jpeg",
                    "isUserUploaded": True,
                    "aspectRatio": aspect_ratio.image_ratio,
                },
                "clientContext": {"sessionId": session_id(), "tool": UPLOAD_TOOL_NAME},
            },
        )

        try:
            response = await self.executor.execute(spec, credential.name, credential.proxy)
        except TokenExpired:
            raise
        except ProviderHTTPError as e:
            raise UploadFailed(e.status_code, e.body, f"Image upload ({step}) failed with HTTP {e.status_code}") from e

        data = response_body(response)
        media_id = ((data or {}).get("mediaGenerationId") or {}).get("mediaGenerationId") if isinstance(data, dict) else None
        if not media_id:
            raise UploadFailed(response.status_code, data, f"Image upload ({step}) returned no media id")

        logger.info(f"[Upload] {credential.name}: {step} image uploaded -> {media_id[:30]}")
        return UploadResult(media_id=media_id, width=data.get("width"), height=data.get("height"))

    async def upload_anchor(
        self,
        raw_image: Union[str, bytes],
        credential: CredentialRecord,
        aspect_ratio: VideoAspectRatio = VideoAspectRatio.LANDSCAPE,
        cropped_image: Union[str, bytes, None] = None,
    ) -> UploadResult:
        """Raw upload then cropped upload; returns the cropped image's media id"""
        await self.upload_image(raw_image, credential, aspect_ratio, step="raw")
        return await self.upload_image(
            cropped_image if cropped_image is not None else raw_image,
            credential,
            aspect_ratio,
            step="cropped",
        )
