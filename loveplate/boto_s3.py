"""Photo storage in S3. Every photo owns two objects under ``photos/{id}/``."""

from functools import lru_cache
from typing import TYPE_CHECKING

import boto3
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from types_boto3_s3 import S3Client
else:
    S3Client = object

from loveplate.utils import get_settings, log

# renditions never change once written
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


@lru_cache
def s3_client() -> S3Client:
    """S3 client for the configured AWS profile, or the default credential chain."""
    profile = get_settings().aws_profile_name
    log.debug(f"Creating S3 client (profile: {profile or 'default'})")
    return boto3.Session(profile_name=profile).client("s3")


def photo_keys(photo_id: str) -> tuple[str, str]:
    """S3 keys of the full image and the thumbnail of a photo."""
    return f"photos/{photo_id}/full.jpg", f"photos/{photo_id}/thumb.jpg"


def public_url(object_name: str) -> str:
    """Public URL of a stored object, served through this service."""
    return f"{get_settings().host.rstrip('/')}/images/{object_name}"


def _missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in MISSING_KEY_CODES


def upload_file_bytes(
    file_bytes: bytes, bucket: str, object_name: str, content_type: str = None
) -> bool:
    """
    Store one rendition.

    :param file_bytes: encoded image
    :param bucket: S3 bucket
    :param object_name: key from :func:`photo_keys`
    :param content_type: MIME type served back by ``/images``
    :return: True if stored, False if S3 refused the write
    """
    extra = {"ContentType": content_type} if content_type else {}
    try:
        s3_client().put_object(
            Bucket=bucket,
            Key=object_name,
            Body=file_bytes,
            CacheControl=IMMUTABLE_CACHE_CONTROL,
            **extra,
        )
    except ClientError as e:
        log.error(f"Could not store {object_name}: {e}")
        return False
    log.debug(f"Stored {object_name} ({len(file_bytes)} B) in bucket {bucket}")
    return True


def get_file_stream(bucket: str, object_name: str):
    """
    The ``get_object`` response of a stored rendition; ``Body`` is streamed.

    :raises FileNotFoundError: the key does not exist or cannot be read
    """
    try:
        return s3_client().get_object(Bucket=bucket, Key=object_name)
    except ClientError as e:
        if _missing(e):
            log.debug(f"{object_name} not found in bucket {bucket}")
        else:
            log.error(e)
        raise FileNotFoundError(f"Could not fetch {object_name} from bucket {bucket}: {e}")


def get_file_bytes(bucket: str, object_name: str) -> bytes:
    """Whole content of a stored rendition, e.g. to send it for captioning."""
    body = get_file_stream(bucket, object_name)["Body"]
    try:
        return body.read()
    finally:
        body.close()


def delete_files(bucket: str, object_names: list[str]) -> bool:
    """
    Remove objects from a bucket. Missing keys are not an error.

    :return: True if S3 accepted the request, False otherwise
    """
    if not object_names:
        return True
    try:
        s3_client().delete_objects(
            Bucket=bucket,
            Delete={"Objects": [{"Key": key} for key in object_names], "Quiet": True},
        )
    except ClientError as e:
        log.error(e)
        return False
    log.debug(f"Deleted {object_names} from bucket {bucket}")
    return True
