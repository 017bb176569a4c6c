"""
Image storage backends.

One backend is built at startup (`build_storage`) and handed to the catalog,
slider and upload routes. A locator is whatever the backend returns from
`store`: "/uploads/<file>" for local disk, the secure URL for Cloudinary.
"""
import logging
import os
import re
import shutil
from typing import Optional
from uuid import uuid4

import cloudinary
import cloudinary.uploader

from config import (
    CLOUDINARY_API_KEY,
    CLOUDINARY_API_SECRET,
    CLOUDINARY_CLOUD_NAME,
    STORAGE_BACKEND,
    UPLOAD_DIR,
)
from errors import InvalidInput

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}
LOCAL_PREFIX = "/uploads/"


def image_extension(filename: Optional[str]) -> str:
    extension = os.path.splitext(filename or "")[1].lower().lstrip(".")
    if extension not in ALLOWED_EXTENSIONS:
        raise InvalidInput("Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.")
    return extension


def has_content(upload) -> bool:
    return bool(upload is not None and getattr(upload, "filename", ""))


class ImageStorage:
    def store(self, upload, folder: str = "products") -> str:
        raise NotImplementedError

    def delete(self, locator: str) -> bool:
        raise NotImplementedError

    def store_many(self, uploads, folder: str = "products"):
        stored = []
        for upload in uploads or []:
            if not has_content(upload):
                continue
            try:
                stored.append(self.store(upload, folder))
            except Exception:
                for locator in stored:
                    self.discard(locator)
                raise
        return stored

    def discard(self, locator: Optional[str]) -> bool:
        """Best-effort delete; failures are logged."""
        if not locator:
            return False
        try:
            return self.delete(locator)
        except Exception as e:
            logger.warning("Could not delete stored image %s: %s", locator, e)
            return False


class LocalImageStorage(ImageStorage):
    def __init__(self, upload_dir: str = UPLOAD_DIR):
        self.upload_dir = upload_dir
        os.makedirs(self.upload_dir, exist_ok=True)

    def store(self, upload, folder="products"):
        extension = image_extension(upload.filename)
        filename = f"{uuid4().hex}.{extension}"
        destination = os.path.join(self.upload_dir, filename)
        with open(destination, "wb") as out:
            shutil.copyfileobj(upload.file, out)
        return f"{LOCAL_PREFIX}{filename}"

    def path_for(self, locator: str) -> Optional[str]:
        if not locator or not locator.startswith(LOCAL_PREFIX):
            return None
        return os.path.join(self.upload_dir, os.path.basename(locator))

    def delete(self, locator):
        target = self.path_for(locator)
        if target is None:
            return False
        try:
            os.remove(target)
        except FileNotFoundError:
            return False
        return True


class CloudinaryImageStorage(ImageStorage):
    _VERSION = re.compile(r"^v\d+$")

    def __init__(self, cloud_name: str, api_key: str, api_secret: str):
        cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)

    def store(self, upload, folder="products"):
        image_extension(upload.filename)
        result = cloudinary.uploader.upload(upload.file, folder=folder, resource_type="auto")
        return result["secure_url"]

    @classmethod
    def public_id(cls, locator: str) -> Optional[str]:
        """https://res.cloudinary.com/<cloud>/image/upload/v123/sliders/abc.jpg -> sliders/abc"""
        if not locator or "/upload/" not in locator:
            return None
        parts = locator.split("/upload/", 1)[1].split("/")
        if parts and cls._VERSION.match(parts[0]):
            parts = parts[1:]
        if not parts or not parts[-1]:
            return None
        parts[-1] = os.path.splitext(parts[-1])[0]
        return "/".join(parts)

    def delete(self, locator):
        public_id = self.public_id(locator)
        if public_id is None:
            return False
        result = cloudinary.uploader.destroy(public_id)
        return result.get("result") == "ok"


def build_storage(backend: str = STORAGE_BACKEND) -> ImageStorage:
    if backend == "cloudinary":
        if not (CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET):
            raise RuntimeError("STORAGE_BACKEND=cloudinary needs CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET")
        logger.info("Storing images in Cloudinary (%s)", CLOUDINARY_CLOUD_NAME)
        return CloudinaryImageStorage(CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET)
    logger.info("Storing images under %s", UPLOAD_DIR)
    return LocalImageStorage(UPLOAD_DIR)
