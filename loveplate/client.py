import logging

import httpx

from loveplate.captioning import CaptioningError, classify_error
from loveplate.payload import BinaryPayload
from loveplate.schema import BilingualDescription, PaginatedPhotos, PhotoWithUrls

log = logging.getLogger(__name__)


class UploadFailed(Exception):
    def __init__(self, status_code: int | None, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail") or response.text)
    except ValueError:
        return response.text


def _captioning_error(response: httpx.Response) -> CaptioningError:
    """
    Rebuild the server's :class:`CaptioningError` from an error response.

    Responses that do not carry a code (e.g. an auth proxy's 401) are
    classified from their status and text.
    """
    try:
        body = response.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None

    if isinstance(detail, dict) and detail.get("code"):
        return CaptioningError(
            detail["code"], detail.get("message") or "", bool(detail.get("retryable"))
        )

    text = detail if isinstance(detail, str) else response.text
    error = classify_error(Exception(f"{response.status_code} {text}"))
    return CaptioningError(error.code, text or error.user_message, error.retryable)


class PlateClient:
    """
    HTTP client for the Love on the Plate API.

    Serves as both the captioner and the uploader of an
    :class:`~loveplate.session.UploadSession`.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        cookies = {"CF_Authorization": access_token} if access_token else None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            cookies=cookies,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "PlateClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def describe(self, image_base64: str) -> BilingualDescription:
        try:
            response = await self._client.post(
                "/api/describe", json={"imageBase64": image_base64}
            )
        except httpx.HTTPError as e:
            raise classify_error(e) from e

        if response.is_error:
            error = _captioning_error(response)
            log.warning(f"Describe failed with {response.status_code}: {error.code}")
            raise error

        return BilingualDescription.model_validate(response.json()["description"])

    async def upload(
        self,
        payload: BinaryPayload,
        filename: str | None,
        caption: BilingualDescription | None = None,
    ) -> PhotoWithUrls:
        data = {}
        if caption is not None:
            data = {
                "dishName": caption.dish_name,
                "descriptionEn": caption.en,
                "descriptionCn": caption.cn,
            }
        try:
            response = await self._client.post(
                "/api/upload",
                files={"file": payload.as_file_part(filename)},
                data=data,
            )
        except httpx.HTTPError as e:
            raise UploadFailed(None, str(e)) from e

        if response.is_error:
            raise UploadFailed(response.status_code, _detail(response))
        return PhotoWithUrls.model_validate(response.json())

    async def list_photos(
        self, cursor: str | None = None, limit: int | None = None
    ) -> PaginatedPhotos:
        params = {k: v for k, v in {"cursor": cursor, "limit": limit}.items() if v is not None}
        response = await self._client.get("/api/photos", params=params)
        response.raise_for_status()
        return PaginatedPhotos.model_validate(response.json())
