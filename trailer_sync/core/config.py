from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    github_token: str = ""
    graphql_url: str = "https://api.github.com/graphql"

    # Ids per BatchGroup page
    page_size: int = 100

    # Network gate; GitHub prefers few connections per host
    request_concurrency: int = 2
    request_timeout_seconds: float = 60.0
    query_retry_count: int = 3

    data_dir: Path = Path.home() / ".trailer"
    dry_run: bool = False

    default_repo_visibility: str = "visible"  # visible, hidden, only_prs, only_issues

    # Update job selection (consumed by __main__)
    update_types: str = "all"
    limit_to_repo_names: str = ""
    keep_only_new_items: bool = False
    notification_mode: str = "standard"  # none, standard, comments_and_reviews

    # Single item refresh (JOB_TYPE=refresh_item)
    refresh_item_id: str = ""
    refresh_with_comments: bool = False

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def save_location(self) -> Path:
        host = urlparse(self.graphql_url).hostname or "localhost"
        return self.data_dir / host


@lru_cache
def get_settings() -> Settings:
    return Settings()
