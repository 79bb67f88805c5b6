import asyncio
import base64
import logging
import mimetypes
import os
from contextlib import asynccontextmanager
from pathlib import Path

from PIL import Image, features
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, StreamingResponse
from starlette.templating import Jinja2Templates

from loveplate import photos
from loveplate.auth.cloudflare import current_user, is_admin, require_admin
from loveplate.boto_s3 import (
    delete_files,
    get_file_bytes,
    get_file_stream,
    photo_keys,
    upload_file_bytes,
)
from loveplate.captioning import CaptioningError, GeminiCaptioner, get_captioner
from loveplate.database import (
    open_database_conn_pool,
    close_database_conn_pool,
    get_session,
    init_db,
)
from loveplate.errors import DecodeError
from loveplate.formatting import format_date, format_relative_time
from loveplate.logging import configure_logging
from loveplate.processing import process_image
from loveplate.schema import (
    BackfillItem,
    BackfillRequest,
    BackfillStatus,
    BackfillSummary,
    BilingualDescription,
    DeleteResult,
    DescribeRequest,
    DescribeResponse,
    GalleryView,
    PaginatedPhotos,
    PhotoUpdate,
    PhotoWithUrls,
)
from loveplate.utils import get_settings
from loveplate.validation import (
    is_valid_base64_image,
    is_valid_uuid,
    sanitize_error_message,
)

# --- ENVIRONMENT VARIABLES ---
if os.environ.get("ENV") == "development":
    print("Loading environment variables from .env file")
    load_dotenv()

RENDITIONS = {"full.jpg", "thumb.jpg"}


# --- DB SETUP ---
@asynccontextmanager
async def lifespan(_app: FastAPI):
    configure_logging(get_settings().log_level)
    await open_database_conn_pool()
    await init_db()
    check_supported_formats()
    yield
    await close_database_conn_pool()


app = FastAPI(title="Love on the Plate", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins_list,
    allow_origin_regex=get_settings().allowed_origins_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

log = logging.getLogger(__name__)


def check_supported_formats():
    supported = {
        "heif": "HEIF" in Image.registered_extensions().values(),
        "webp": features.check_module("webp"),
        "jpeg": features.check_codec("jpg"),
        "png": features.check_codec("zlib"),
    }

    log.info(f"Supported formats: {supported}")


templates = Jinja2Templates(directory=Path(__file__).parent / "templates")
templates.env.filters["relative_time"] = format_relative_time
templates.env.filters["date"] = format_date


def captioning_http_error(error: CaptioningError) -> HTTPException:
    if error.code in {"INVALID_INPUT", "CONTENT_BLOCKED", "PAYLOAD_TOO_LARGE"}:
        status_code = 400
    elif error.retryable:
        status_code = 503
    else:
        status_code = 502
    return HTTPException(
        status_code=status_code,
        detail={
            "code": error.code,
            "message": error.user_message,
            "retryable": error.retryable,
        },
    )


async def generate_caption(
    captioner: GeminiCaptioner, image_bytes: bytes
) -> BilingualDescription | None:
    """Caption for a stored image; None when the captioning service fails."""
    try:
        return await captioner.describe(base64.b64encode(image_bytes).decode("ascii"))
    except CaptioningError as e:
        log.warning(f"Continuing without a caption ({e.code}): {e.user_message}")
        return None


async def owned_photo(session: AsyncSession, photo_id: str, user: str):
    photo = await photos.get_photo(session, photo_id)
    if photo is None:
        raise HTTPException(status_code=404, detail="Photo not found")
    if photo.uploaded_by != user:
        raise HTTPException(status_code=403, detail="Forbidden")
    return photo


def db_cursor(cursor: str | None) -> str | None:
    if not cursor:
        return None
    try:
        return photos.parse_cursor(cursor)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid cursor")


@app.get("/", response_class=HTMLResponse, include_in_schema=False)
async def gallery(
    request: Request,
    view: GalleryView = GalleryView.masonry,
    cursor: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    page, next_cursor = await photos.list_photos(
        session, get_settings().page_size, db_cursor(cursor)
    )
    return templates.TemplateResponse(
        request,
        "gallery.html",
        {
            "photos": [photos.with_urls(photo) for photo in page],
            "view": view.value,
            "views": [v.value for v in GalleryView],
            "next_cursor": next_cursor,
        },
    )


@app.get("/api/photos")
async def list_photos(
    cursor: str | None = None,
    limit: int | None = None,
    session: AsyncSession = Depends(get_session),
) -> PaginatedPhotos:
    settings = get_settings()
    limit = min(max(limit or settings.page_size, 1), settings.max_page_size)
    page, next_cursor = await photos.list_photos(session, limit, db_cursor(cursor))
    return PaginatedPhotos(
        photos=[photos.with_urls(photo) for photo in page],
        next_cursor=next_cursor,
        has_more=next_cursor is not None,
    )


@app.patch("/api/photos")
async def update_photo(
    data: PhotoUpdate,
    user: str = Depends(current_user),
    session: AsyncSession = Depends(get_session),
) -> PhotoWithUrls:
    await owned_photo(session, data.photo_id, user)
    photo = await photos.update_photo(session, data.photo_id, data.changes())
    return photos.with_urls(photo)


@app.delete("/api/photos")
async def delete_photo(
    photo_id: str | None = Query(None, alias="id"),
    user: str = Depends(current_user),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_session),
) -> DeleteResult:
    if not photo_id:
        raise HTTPException(status_code=400, detail="Photo ID required")
    if not is_valid_uuid(photo_id):
        raise HTTPException(status_code=400, detail="Invalid photo ID")

    photo = await photos.get_photo(session, photo_id)
    if photo is None:
        raise HTTPException(status_code=404, detail="Photo not found")
    if not admin and photo.uploaded_by != user:
        raise HTTPException(status_code=403, detail="Forbidden")

    bucket = get_settings().aws_s3_bucket
    if not delete_files(bucket, [photo.storage_path, photo.thumbnail_path]):
        log.warning(f"Storage objects of photo {photo_id} could not be removed")

    await photos.delete_photo(session, photo_id)
    log.info(f"Photo {photo_id} deleted by {user}")
    return DeleteResult(success=True)


@app.post("/api/upload")
async def upload_photo(
    file: UploadFile = File(...),
    dish_name: str | None = Form(None, alias="dishName"),
    description_en: str | None = Form(None, alias="descriptionEn"),
    description_cn: str | None = Form(None, alias="descriptionCn"),
    user: str = Depends(current_user),
    captioner: GeminiCaptioner = Depends(get_captioner),
    session: AsyncSession = Depends(get_session),
) -> PhotoWithUrls:
    settings = get_settings()
    if file.content_type not in settings.allowed_content_types:
        raise HTTPException(
            status_code=400,
            detail="Invalid file type. Only JPEG, PNG, WebP, and HEIC are allowed.",
        )

    try:
        raw = await file.read()
    finally:
        await file.close()

    if not raw:
        raise HTTPException(status_code=400, detail="No file provided")
    if len(raw) > settings.max_file_size:
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size is {settings.max_file_size // (1024 * 1024)}MB.",
        )

    try:
        processed = await asyncio.to_thread(process_image, raw)
    except DecodeError as e:
        log.debug(f"Rejected upload {file.filename}: {e}")
        raise HTTPException(status_code=400, detail=e.user_message)

    photo_id = photos.new_photo_id()
    full_key, thumb_key = photo_keys(photo_id)
    bucket = settings.aws_s3_bucket

    if not upload_file_bytes(processed.full_bytes, bucket, full_key, "image/jpeg"):
        raise HTTPException(status_code=500, detail="Failed to upload image")
    if not upload_file_bytes(processed.thumb_bytes, bucket, thumb_key, "image/jpeg"):
        delete_files(bucket, [full_key])
        raise HTTPException(status_code=500, detail="Failed to upload thumbnail")

    if any(value is not None for value in (dish_name, description_en, description_cn)):
        caption = BilingualDescription(
            dish_name=dish_name or "", en=description_en or "", cn=description_cn or ""
        )
    else:
        caption = await generate_caption(captioner, processed.full_bytes)

    try:
        photo = await photos.insert_photo(
            session,
            photo_id=photo_id,
            storage_path=full_key,
            thumbnail_path=thumb_key,
            caption=caption,
            original_filename=file.filename,
            file_size=len(processed.full_bytes),
            width=processed.width,
            height=processed.height,
            captured_at=processed.captured_at,
            uploaded_by=user,
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        log.error(f"Could not save photo {photo_id}: {e}")
        delete_files(bucket, [full_key, thumb_key])
        raise HTTPException(status_code=500, detail="Failed to save photo record")

    log.info(f"Photo {photo_id} uploaded by {user}")
    return photos.with_urls(photo)


@app.post("/api/describe")
async def describe(
    data: DescribeRequest,
    user: str = Depends(current_user),
    captioner: GeminiCaptioner = Depends(get_captioner),
    session: AsyncSession = Depends(get_session),
) -> DescribeResponse:
    # preview for an image that has not been uploaded yet
    if data.image_base64 is not None:
        if not is_valid_base64_image(data.image_base64):
            raise HTTPException(status_code=400, detail="Invalid image data")
        try:
            description = await captioner.describe(data.image_base64)
        except CaptioningError as e:
            raise captioning_http_error(e)
        return DescribeResponse(description=description)

    if not data.photo_id:
        raise HTTPException(status_code=400, detail="Photo ID or image data required")

    photo = await owned_photo(session, data.photo_id, user)
    try:
        image_bytes = get_file_bytes(get_settings().aws_s3_bucket, photo.storage_path)
    except FileNotFoundError as e:
        log.error(sanitize_error_message(e))
        raise HTTPException(status_code=500, detail="Failed to fetch image")

    try:
        description = await captioner.describe(
            base64.b64encode(image_bytes).decode("ascii")
        )
    except CaptioningError as e:
        raise captioning_http_error(e)

    await photos.set_caption(session, photo.id, description)
    return DescribeResponse(description=description)


async def backfill_photo(
    session: AsyncSession, captioner: GeminiCaptioner, photo_id: str
) -> BackfillItem:
    photo = await photos.get_photo(session, photo_id)
    if photo is None:
        raise LookupError("Photo not found")

    image_bytes = get_file_bytes(get_settings().aws_s3_bucket, photo.storage_path)
    description = await captioner.describe(base64.b64encode(image_bytes).decode("ascii"))
    await photos.set_caption(session, photo_id, description)
    return BackfillItem(
        photo_id=photo_id,
        dish_name=description.dish_name,
        description_en=description.en,
        description_cn=description.cn,
    )


@app.post("/api/backfill", dependencies=[Depends(require_admin)])
async def backfill(
    data: BackfillRequest,
    captioner: GeminiCaptioner = Depends(get_captioner),
    session: AsyncSession = Depends(get_session),
) -> BackfillItem | BackfillSummary:
    if data.photo_id:
        try:
            return await backfill_photo(session, captioner, data.photo_id)
        except LookupError:
            raise HTTPException(status_code=404, detail="Photo not found")
        except FileNotFoundError:
            raise HTTPException(status_code=500, detail="Failed to fetch image")
        except CaptioningError as e:
            raise captioning_http_error(e)

    todo = [p for p in await photos.list_all_photos(session) if p.needs_backfill]
    summary = BackfillSummary(total=len(todo))

    # one at a time to stay under the captioning rate limit
    for index, photo in enumerate(todo):
        try:
            await backfill_photo(session, captioner, photo.id)
            await session.commit()
            summary.success += 1
        except (LookupError, FileNotFoundError, CaptioningError) as e:
            summary.failed += 1
            message = getattr(e, "user_message", None) or sanitize_error_message(e)
            summary.errors.append(f"{photo.id}: {message}")
            log.warning(f"Backfill failed for {photo.id}: {message}")
        if index < len(todo) - 1:
            await asyncio.sleep(get_settings().backfill_delay)

    log.info(f"Backfill finished: {summary.success}/{summary.total} succeeded")
    return summary


@app.get("/api/backfill", dependencies=[Depends(require_admin)])
async def backfill_status(
    session: AsyncSession = Depends(get_session),
) -> BackfillStatus:
    all_photos = await photos.list_all_photos(session)
    missing = sum(1 for photo in all_photos if photo.needs_backfill)
    return BackfillStatus(
        with_dish_name=len(all_photos) - missing,
        without_dish_name=missing,
        total=len(all_photos),
    )


@app.get("/images/photos/{photo_id}/{filename}")
async def get_image(photo_id: str, filename: str):
    if not is_valid_uuid(photo_id) or filename not in RENDITIONS:
        raise HTTPException(status_code=404, detail="Image not found")

    s3_key = f"photos/{photo_id}/{filename}"
    try:
        s3obj = get_file_stream(get_settings().aws_s3_bucket, s3_key)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Image not found")

    content_type = s3obj.get("ContentType") or mimetypes.guess_type(filename)[0] or "application/octet-stream"

    headers = {
        "Cache-Control": "public, max-age=2592000, stale-while-revalidate=1209600"
    }
    return StreamingResponse(s3obj["Body"], media_type=content_type, headers=headers)


@app.get("/health")
async def health_check():
    """
    Health check endpoint to verify the service is running
    """
    return {"status": "ok", "message": "Service is running"}
