"""
Client for the hosted image upload API (Cloudinary unsigned uploads).

Photos for listings, lost-and-found reports and profiles are posted as a
multipart form with the configured upload preset; the API answers with a public
``secure_url``. Failures are reported as UploadFailed and never retried here.
"""
from typing import NamedTuple, Optional

import httpx

from errors import UploadFailed
from logging_setup import get_logger
from settings import settings

logger = get_logger("uploads")


class ImageFile(NamedTuple):
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class ImageUploader:
    def __init__(
        self,
        cloud_name: Optional[str] = None,
        upload_preset: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.cloud_name = cloud_name or settings.cloudinary_cloud_name
        self.upload_preset = upload_preset or settings.cloudinary_upload_preset
        self.api_base = (api_base or settings.cloudinary_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.upload_timeout_seconds
        self.transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/{self.cloud_name}/image/upload"

    def upload(self, image: ImageFile) -> str:
        """Upload one image and return its public URL."""
        files = {"file": (image.filename, image.content, image.content_type)}
        data = {"upload_preset": self.upload_preset}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.endpoint, data=data, files=files)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Image upload to %s failed: %s", self.endpoint, exc)
            raise UploadFailed() from exc

        url = payload.get("secure_url") if isinstance(payload, dict) else None
        if not url:
            logger.warning("Image upload to %s returned no secure_url", self.endpoint)
            raise UploadFailed()
        logger.info("Uploaded %s (%d bytes)", image.filename, len(image.content))
        return url
