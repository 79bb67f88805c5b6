from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from loveplate.validation import MAX_BASE64_LENGTH, is_valid_uuid


class GalleryView(str, Enum):
    floating = "floating"
    masonry = "masonry"
    timeline = "timeline"


class BilingualDescription(BaseModel):
    """Caption returned by the captioning service."""

    model_config = ConfigDict(populate_by_name=True)

    dish_name: str = Field("", alias="dishName")
    en: str = ""
    cn: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.dish_name and self.en and self.cn)


class Photo(BaseModel):
    id: str
    storage_path: str
    thumbnail_path: str
    dish_name: str | None = None
    description_en: str | None = None
    description_cn: str | None = None
    original_filename: str | None = None
    file_size: int | None = None
    width: int | None = None
    height: int | None = None
    captured_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    uploaded_by: str | None = None

    @property
    def needs_backfill(self) -> bool:
        return not (self.dish_name and self.description_en and self.description_cn)


class PhotoWithUrls(Photo):
    model_config = ConfigDict(populate_by_name=True)

    image_url: HttpUrl = Field(..., alias="imageUrl")
    thumbnail_url: HttpUrl = Field(..., alias="thumbnailUrl")


class PaginatedPhotos(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    photos: list[PhotoWithUrls]
    next_cursor: str | None = Field(None, alias="nextCursor")
    has_more: bool = Field(False, alias="hasMore")


class PhotoUpdate(BaseModel):
    """
    Partial caption edit. Fields left out of the request body are not touched.
    """

    model_config = ConfigDict(populate_by_name=True)

    photo_id: str = Field(..., alias="photoId")
    dish_name: str | None = Field(None, alias="dishName")
    description_en: str | None = Field(None, alias="descriptionEn")
    description_cn: str | None = Field(None, alias="descriptionCn")

    @field_validator("photo_id")
    @classmethod
    def check_uuid(cls, value: str) -> str:
        if not is_valid_uuid(value):
            raise ValueError("photoId must be a UUID")
        return value

    def changes(self) -> dict[str, str]:
        fields = self.model_dump(exclude_unset=True, exclude={"photo_id"})
        return {k: v for k, v in fields.items() if v is not None}


class DescribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    photo_id: str | None = Field(None, alias="photoId")
    image_base64: str | None = Field(
        None,
        alias="imageBase64",
        max_length=MAX_BASE64_LENGTH,
        description="Base64-encoded JPEG (no data URI header).",
    )

    @field_validator("photo_id")
    @classmethod
    def check_uuid(cls, value: str | None) -> str | None:
        if value is not None and not is_valid_uuid(value):
            raise ValueError("photoId must be a UUID")
        return value


class DescribeResponse(BaseModel):
    description: BilingualDescription


class BackfillRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    photo_id: str | None = Field(None, alias="photoId")


class BackfillItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    photo_id: str = Field(..., alias="photoId")
    dish_name: str = Field(..., alias="dishName")
    description_en: str = Field(..., alias="descriptionEn")
    description_cn: str = Field(..., alias="descriptionCn")


class BackfillSummary(BaseModel):
    total: int
    success: int = 0
    failed: int = 0
    errors: list[str] = []


class BackfillStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    with_dish_name: int = Field(..., alias="withDishName")
    without_dish_name: int = Field(..., alias="withoutDishName")
    total: int


class DeleteResult(BaseModel):
    success: bool
