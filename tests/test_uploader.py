import asyncio
import json

import httpx
import pytest

from config import UPLOAD_IMAGE_URL, VideoAspectRatio
from error_handler import UploadFailed
from lanes.auth import TokenRefresher
from lanes.uploader import ImageUploader, clean_base64


def _uploader(executor, test_config):
    return ImageUploader(executor, TokenRefresher(executor, test_config))


def test_clean_base64_strips_data_url():
    assert clean_base64("data:image/jpeg;base64,QUJD") == "QUJD"
    assert clean_base64(b"ABC") == "QUJD"


def test_anchor_upload_returns_cropped_media_id(executor, test_config, provider, lane_a):
    provider.add(
        UPLOAD_IMAGE_URL,
        httpx.Response(200, json={"mediaGenerationId": {"mediaGenerationId": "raw-id"}}),
        httpx.Response(200, json={"mediaGenerationId": {"mediaGenerationId": "crop-id"}, "width": 1280, "height": 720}),
    )

    result = asyncio.run(_uploader(executor, test_config).upload_anchor(
        "data:image/jpeg;base64,UkFX", lane_a, VideoAspectRatio.LANDSCAPE, cropped_image="Q1JPUA==",
    ))

    assert result.media_id == "crop-id"
    assert result.width == 1280
    bodies = provider.bodies(UPLOAD_IMAGE_URL)
    assert [b["imageInput"]["rawImageBytes"] for b in bodies] == ["UkFX", "Q1JPUA=="]
    assert bodies[0]["imageInput"]["aspectRatio"] == VideoAspectRatio.LANDSCAPE.image_ratio


def test_upload_error_is_upload_failed(executor, test_config, provider, lane_a):
    provider.add(UPLOAD_IMAGE_URL, httpx.Response(400, json={"error": "bad image"}))

    with pytest.raises(UploadFailed) as info:
        asyncio.run(_uploader(executor, test_config).upload_image("QUJD", lane_a))
    assert info.value.status_code == 400


def test_upload_without_media_id_fails(executor, test_config, provider, lane_a):
    provider.add(UPLOAD_IMAGE_URL, httpx.Response(200, json={}))

    with pytest.raises(UploadFailed):
        asyncio.run(_uploader(executor, test_config).upload_image("QUJD", lane_a))
