import platform
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_volume() -> str:
    # macOS keeps "/" read-only; user data lives on the Data volume
    if platform.system() == "Darwin":
        return "/System/Volumes/Data"
    return "/var/tmp"


def _default_fda_path() -> str:
    # only readable once the app has Full Disk Access
    if platform.system() == "Darwin":
        return "/Library/Application Support"
    return "/"


def _default_data_workdir() -> str:
    if platform.system() == "Darwin":
        return "Users/Shared"
    return ""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PURGEPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    api_key: str | None = None
    rate_limit_per_minute: int = 120
    log_json: bool = True
    jsonl_log: str | None = None
    db_path: str = "purgepoint.db"

    dd_path: str = "/bin/dd"
    chunk_mb: int = Field(default=32, ge=1)
    direct_io: bool = True
    safety_buffer_mb: int = Field(default=2048, ge=0)
    scratch_dir_name: str = "PurgePointFill"
    fill_file_name: str = "junk"
    data_volume_path: str = Field(default_factory=_default_data_volume)
    data_volume_workdir: str = Field(default_factory=_default_data_workdir)
    full_disk_access_path: str = Field(default_factory=_default_fda_path)

    # Defaults for the user-facing toggles until they are changed via /settings
    use_secure_erase: bool = False
    leave_safety_buffer: bool = False
    test_mode: bool = False

    notifications_enabled: bool = True
    cancel_timeout: float = 15.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
