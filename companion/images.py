"""
Image generation client.

The generation engine runs as a separate service; this module only submits
jobs to it and returns the task handle ({"taskId": ...}) that the browser
polls with.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from companion.config_loader import CONFIG

logger = logging.getLogger(__name__)


class ImageService(Protocol):
    async def generate_img(self, **params: Any) -> Dict[str, Any]:
        ...


class HttpImageService:
    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        cfg = (config or CONFIG).get("image", {})
        self.api_url = cfg.get("api_url")
        self.timeout = float(cfg.get("timeout", 30.0))
        self.http_client = http_client

    async def generate_img(self, **params: Any) -> Dict[str, Any]:
        """
        Submit a generation job.

        Expected params: prompt, userId, chatId, userChatId, imageType,
        image_num, placeholderId (plus optional aspectRatio, customPromptId).

        Raises:
            ValueError: empty prompt
            httpx.HTTPError: engine unreachable or non-2xx
        """
        prompt = params.get("prompt")
        if not prompt or not str(prompt).strip():
            raise ValueError("Image prompt is missing")

        payload = {key: str(value) if key in ("userId", "chatId", "userChatId") else value
                   for key, value in params.items() if value is not None}
        logger.info(f"[IMAGE] Submitting {payload.get('image_num', 1)} image(s) "
                    f"for user {payload.get('userId')} ({payload.get('imageType')})")

        if self.http_client is not None:
            response = await self.http_client.post(self.api_url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=payload)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, dict) else {}
