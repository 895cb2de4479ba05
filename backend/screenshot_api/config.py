"""
Application configuration
"""

import os
from typing import List


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    """Application settings"""

    def __init__(self):
        self.DEBUG: bool = _env_bool("DEBUG", "false")
        self.HOST: str = os.getenv("HOST", "0.0.0.0")
        self.PORT: int = int(os.getenv("PORT", "8000"))

        cors_origins_str = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:8000")
        self.CORS_ORIGINS: List[str] = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]

        # Bulk capture concurrency; single captures are never capped
        self.MAX_CONCURRENT_SCREENSHOTS: int = int(os.getenv("MAX_CONCURRENT_SCREENSHOTS", "3"))

        # Browser launching
        self.DEPLOY_ENV: str = os.getenv("DEPLOY_ENV", "development")
        default_mode = "packaged" if self.DEPLOY_ENV == "production" else "local"
        self.BROWSER_MODE: str = os.getenv("BROWSER_MODE", default_mode)
        self.CHROMIUM_EXECUTABLE_PATH: str = os.getenv("CHROMIUM_EXECUTABLE_PATH", "")
        self.CHROMIUM_CDP_ENDPOINT: str = os.getenv("CHROMIUM_CDP_ENDPOINT", "")
        self.BROWSER_LOCALE: str = os.getenv("BROWSER_LOCALE", "zh-CN")
        self.BROWSER_TIMEZONE: str = os.getenv("BROWSER_TIMEZONE", "Asia/Shanghai")
        self.VIEWPORT_JITTER: int = int(os.getenv("VIEWPORT_JITTER", "100"))

        # Capture timing (milliseconds)
        self.NAVIGATION_WAIT_UNTIL: str = os.getenv("NAVIGATION_WAIT_UNTIL", "domcontentloaded")
        self.NAVIGATION_TIMEOUT_MS: int = int(os.getenv("NAVIGATION_TIMEOUT_MS", "45000"))
        self.SELECTOR_TIMEOUT_MS: int = int(os.getenv("SELECTOR_TIMEOUT_MS", "10000"))
        self.PAGE_TIMEOUT_MS: int = int(os.getenv("PAGE_TIMEOUT_MS", "60000"))
        self.NORMALIZE_FONTS: bool = _env_bool("NORMALIZE_FONTS", "true")
        self.SCROLL_MAX_STEPS: int = int(os.getenv("SCROLL_MAX_STEPS", "200"))
        self.SCROLL_MAX_DURATION_MS: int = int(os.getenv("SCROLL_MAX_DURATION_MS", "60000"))

        # Storage settings
        self.STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "vercel")
        self.STORAGE_PREFIX: str = os.getenv("STORAGE_PREFIX", "screenshot")
        self.BLOB_READ_WRITE_TOKEN: str = os.getenv("BLOB_READ_WRITE_TOKEN", "")
        self.BLOB_API_URL: str = os.getenv("BLOB_API_URL", "https://blob.vercel-storage.com")
        self.STORAGE_DIR: str = os.getenv("STORAGE_DIR", "/tmp/screenshots")
        self.PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")


settings = Settings()
