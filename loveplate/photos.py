"""Queries against the ``photos`` table."""

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from loveplate.boto_s3 import public_url
from loveplate.schema import BilingualDescription, Photo, PhotoWithUrls

log = logging.getLogger(__name__)

CAPTION_COLUMNS = ("dish_name", "description_en", "description_cn")


def utcnow() -> str:
    """Timestamp in the one text format stored in the table, so text order is time order."""
    return to_db_time(datetime.now(timezone.utc))


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_cursor(cursor: str) -> str:
    """
    Normalise a pagination cursor to the stored timestamp format.

    :raises ValueError: if the cursor is not an ISO 8601 timestamp
    """
    return to_db_time(datetime.fromisoformat(cursor.replace("Z", "+00:00")))


def new_photo_id() -> str:
    return str(uuid.uuid4())


def with_urls(photo: Photo) -> PhotoWithUrls:
    return PhotoWithUrls(
        **photo.model_dump(),
        image_url=public_url(photo.storage_path),
        thumbnail_url=public_url(photo.thumbnail_path),
    )


async def insert_photo(
    session: AsyncSession,
    *,
    photo_id: str,
    storage_path: str,
    thumbnail_path: str,
    caption: BilingualDescription | None,
    original_filename: str | None,
    file_size: int,
    width: int,
    height: int,
    captured_at: datetime | None,
    uploaded_by: str,
) -> Photo:
    now = utcnow()
    params = {
        "id": photo_id,
        "storage_path": storage_path,
        "thumbnail_path": thumbnail_path,
        "dish_name": caption.dish_name if caption else None,
        "description_en": caption.en if caption else None,
        "description_cn": caption.cn if caption else None,
        "original_filename": original_filename,
        "file_size": file_size,
        "width": width,
        "height": height,
        "captured_at": to_db_time(captured_at) if captured_at else None,
        "created_at": now,
        "updated_at": now,
        "uploaded_by": uploaded_by,
    }
    await session.execute(
        text(
            """
INSERT INTO photos (
    id, storage_path, thumbnail_path, dish_name, description_en,
    description_cn, original_filename, file_size, width, height,
    captured_at, created_at, updated_at, uploaded_by
) VALUES (
    :id, :storage_path, :thumbnail_path, :dish_name, :description_en,
    :description_cn, :original_filename, :file_size, :width, :height,
    :captured_at, :created_at, :updated_at, :uploaded_by
)
"""
        ),
        params,
    )
    log.debug(f"Inserted photo {photo_id}")
    return Photo(**params)


async def get_photo(session: AsyncSession, photo_id: str) -> Photo | None:
    result = await session.execute(
        text("SELECT * FROM photos WHERE id = :id"), {"id": photo_id}
    )
    row = result.mappings().first()
    return Photo(**row) if row else None


async def list_photos(
    session: AsyncSession, limit: int, cursor: str | None = None
) -> tuple[list[Photo], str | None]:
    """
    One page of photos, newest first.

    Fetches ``limit + 1`` rows to learn whether another page exists. The
    returned cursor is the ``created_at`` of the last photo on the page, or
    None on the last page.
    """
    params = {"limit": limit + 1}
    where = ""
    if cursor:
        where = "WHERE created_at < :cursor"
        params["cursor"] = cursor

    result = await session.execute(
        text(f"SELECT * FROM photos {where} ORDER BY created_at DESC LIMIT :limit"),
        params,
    )
    rows = list(result.mappings())

    has_more = len(rows) > limit
    rows = rows[:limit]
    next_cursor = rows[-1]["created_at"] if has_more and rows else None
    return [Photo(**row) for row in rows], next_cursor


async def list_all_photos(session: AsyncSession) -> list[Photo]:
    result = await session.execute(
        text("SELECT * FROM photos ORDER BY created_at DESC")
    )
    return [Photo(**row) for row in result.mappings()]


async def update_photo(
    session: AsyncSession, photo_id: str, changes: dict[str, str | None]
) -> Photo | None:
    unknown = set(changes) - set(CAPTION_COLUMNS)
    if unknown:
        raise ValueError(f"Cannot update columns {sorted(unknown)}")

    if changes:
        assignments = ", ".join(f"{column} = :{column}" for column in changes)
        await session.execute(
            text(
                f"UPDATE photos SET {assignments}, updated_at = :updated_at WHERE id = :id"
            ),
            {**changes, "updated_at": utcnow(), "id": photo_id},
        )
    return await get_photo(session, photo_id)


async def set_caption(
    session: AsyncSession, photo_id: str, caption: BilingualDescription
) -> Photo | None:
    return await update_photo(
        session,
        photo_id,
        {
            "dish_name": caption.dish_name,
            "description_en": caption.en,
            "description_cn": caption.cn,
        },
    )


async def delete_photo(session: AsyncSession, photo_id: str) -> None:
    await session.execute(text("DELETE FROM photos WHERE id = :id"), {"id": photo_id})
    log.debug(f"Deleted photo {photo_id}")
