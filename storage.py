"""
Object storage (S3) client and image intake helpers.
"""

import logging
import secrets
from typing import Iterable, Tuple

import boto3
import filetype
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import HTTPException, UploadFile

import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class Bucket:
    def __init__(self, client, bucket_name: str):
        self.client = client
        self.bucket_name = bucket_name

    @classmethod
    def from_settings(cls) -> "Bucket":
        client = boto3.client("s3", region_name=settings.AWS_REGION)
        return cls(client, settings.S3_BUCKET_NAME)

    def upload_image(self, object_key: str, extension: str, image: bytes) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=object_key,
                Body=image,
                ACL="public-read",
                ContentType=f"image/{extension}",
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"error occured while uploading {object_key} to bucket {self.bucket_name}") from e
        logger.info("uploaded %s (%d bytes) to %s", object_key, len(image), self.bucket_name)

    def upload_multiple_images(self, images: Iterable[Tuple[str, str, bytes]]) -> None:
        """Upload (object_key, extension, data) triples, stopping at the first failure."""
        for object_key, extension, image in images:
            self.upload_image(object_key, extension, image)

    def delete_image(self, object_key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=object_key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"error occured while deleting object {object_key} from bucket {self.bucket_name}") from e
        logger.info("deleted %s from %s", object_key, self.bucket_name)


def process_image(upload: UploadFile) -> Tuple[bytes, str, str]:
    """
    Read an uploaded image. Returns (data, file_name, extension), the file
    name being random hex plus the extension. The type is sniffed from the
    bytes themselves, whatever content type the client declared; anything
    that is not an image is rejected with 400.
    """
    data = upload.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="empty image upload")

    kind = filetype.image_match(data)
    if kind is None:
        logger.info("rejected upload %r declared as %s", upload.filename, upload.content_type)
        raise HTTPException(status_code=400, detail="wrong file upload, only images required")
    extension = kind.mime.split("/", 1)[1]

    file_name = f"{secrets.token_hex(16)}.{extension}"
    return data, file_name, extension
