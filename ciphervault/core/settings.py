# process-level settings, read from the environment / .env
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

APP_NAME = "CipherVault"


def get_app_data_path() -> Path:
    home = Path.home()
    if sys.platform == "win32":
        # Windows: C:\Users\Name\AppData\Roaming\CipherVault
        return home / "AppData" / "Roaming" / APP_NAME
    # Linux/Mac: /home/name/.local/share/CipherVault
    return home / ".local" / "share" / APP_NAME


class Settings(BaseSettings):
    PROJECT_NAME: str = "CipherVault"
    API_V1_STR: str = "/api/v1"

    # None means the per-user application data directory
    DATA_DIR: Optional[Path] = None
    CONFIG_FILENAME: str = "config.json"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="CIPHERVAULT_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def data_dir(self) -> Path:
        return self.DATA_DIR or get_app_data_path()

    @property
    def config_path(self) -> Path:
        return self.data_dir / self.CONFIG_FILENAME


@lru_cache
def get_settings() -> Settings:
    return Settings()
