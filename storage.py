"""
Object storage for product images

Objects live in the storage_objects collection keyed by (bucket, path) and
are served back from the public object route.
"""
import logging
import os
import time
from typing import Optional

from errors import ValidationFailed
from gateway import MarketGateway
from identity import Session, try_ensure_profile

logger = logging.getLogger("farmmarket.storage")

PRODUCT_IMAGES_BUCKET = "product-images"
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


def public_url(bucket: str, path: str) -> str:
    return f"{PUBLIC_BASE_URL}/storage/v1/object/public/{bucket}/{path}"


def _extension(filename: Optional[str], content_type: str) -> str:
    if filename and "." in filename:
        return filename.rsplit(".", 1)[1].lower()
    return EXTENSIONS.get(content_type, "bin")


def upload_product_image(gateway: MarketGateway, session: Session, filename: Optional[str], content: bytes, content_type: str) -> str:
    if not content_type or not content_type.startswith("image/"):
        raise ValidationFailed("Only image uploads are allowed")
    if not content:
        raise ValidationFailed("Image is empty")
    if len(content) > MAX_IMAGE_BYTES:
        raise ValidationFailed("Image is too large")

    name = f"{int(time.time() * 1000)}.{_extension(filename, content_type)}"
    farmer_id = session.farmer.id if session.farmer else None
    if farmer_id is None and session.role == "farmer":
        farmer_id = try_ensure_profile(gateway, session.user)
    path = f"{farmer_id}/{name}" if farmer_id else name

    gateway.put_object(PRODUCT_IMAGES_BUCKET, path, content, content_type)
    logger.info("image_uploaded bucket=%s path=%s size=%s", PRODUCT_IMAGES_BUCKET, path, len(content))
    return public_url(PRODUCT_IMAGES_BUCKET, path)


def read_object(gateway: MarketGateway, bucket: str, path: str) -> Optional[dict]:
    return gateway.get_object(bucket, path)
