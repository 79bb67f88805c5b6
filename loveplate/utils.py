import logging
from functools import lru_cache

from pydantic import computed_field, FilePath, NewPath
from pydantic_settings import BaseSettings

from loveplate.logging import LogLevels

log = logging.getLogger(__name__)


class Settings(BaseSettings):
    # cors
    allowed_origins: str | None = None
    """A comma-separated list of allowed origins for CORS. No spaces allowed."""
    allowed_origins_regex: str | None = None

    @computed_field
    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse the allowed origins into a list."""
        if not self.allowed_origins:
            return []

        return [origin.strip() for origin in self.allowed_origins.split(",")]

    # AWS S3 settings
    aws_s3_bucket: str
    aws_profile_name: str | None = None

    # clouflare settings
    policy_aud: str
    team_domain: str
    pyjwk_cache_lifespan: int = 14400  # default in Cloudflare
    admin_file: FilePath | NewPath = "/config/admins.json"
    """A json file with a list of admin emails (may backfill and delete any photo)."""

    host: str = "http://localhost:8000"

    # uploads
    max_file_size: int = 10 * 1024 * 1024  # Default to 10 MB
    allowed_content_types: set[str] = {
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/heic",
        "image/heif",
    }

    # gallery
    page_size: int = 12
    max_page_size: int = 50

    # captioning
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout: float = 60.0
    backfill_delay: float = 0.5
    """Seconds to wait between photos when backfilling captions."""

    log_level: LogLevels = LogLevels.error

    db_file: FilePath | NewPath = "/data/photos.sqlite"

    @computed_field
    @property
    def sqlite_db(self) -> str:
        """Construct the SQLite database URL."""
        return f"sqlite+aiosqlite:///{self.db_file}"

    @computed_field
    @property
    def certs_url(self) -> str:
        """Construct the URL for the certificates."""
        return f"https://{self.team_domain}/cdn-cgi/access/certs"


@lru_cache
def get_settings() -> Settings:
    """Get application settings from environment variables."""
    return Settings()
