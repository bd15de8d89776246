"""
Image uploads to Cloudinary.

Only the returned public URL is stored on the listing.
"""

import io
import logging
import uuid
from typing import Optional

import cloudinary
import cloudinary.uploader

from config import Settings
from errors import Internal, InvalidInput

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB


class ImageStorage:
    def __init__(self, settings: Settings):
        self.folder = settings.CLOUDINARY_FOLDER
        self.enabled = settings.cloudinary_enabled
        if self.enabled:
            cloudinary.config(
                cloud_name=settings.CLOUDINARY_CLOUD_NAME,
                api_key=settings.CLOUDINARY_API_KEY,
                api_secret=settings.CLOUDINARY_API_SECRET,
                secure=True,
            )
        else:
            logger.warning("Cloudinary credentials not set. Image uploads will fail.")

    def upload(self, data: bytes, filename: Optional[str] = None) -> str:
        """Upload image bytes and return the public https URL."""
        if len(data) > MAX_FILE_SIZE:
            raise InvalidInput("Image file exceeds 10MB")
        if not self.enabled:
            raise Internal("Error uploading image: storage is not configured")

        public_id = uuid.uuid4().hex[:16]
        logger.info("Uploading image to Cloudinary: folder=%s, name=%s, size=%d", self.folder, filename, len(data))
        try:
            result = cloudinary.uploader.upload(
                io.BytesIO(data),
                folder=self.folder,
                public_id=public_id,
                resource_type="image",
                overwrite=False,
            )
        except Exception as e:
            logger.exception("Cloudinary upload failed: %s", e)
            raise Internal("Error uploading image") from e

        return result["secure_url"]
