from pydantic import Field
from pydantic_settings import BaseSettings
from typing import List
from pathlib import Path


class Settings(BaseSettings):
    APP_NAME: str = "TrackLive"
    API_PREFIX: str = "/api"
    WS_PREFIX: str = "/ws"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    HOST: str = "0.0.0.0"
    PORT: int = 3000
    CORS_ORIGIN: str = Field(default="http://localhost:3000", description="Single allowed cross-origin source, or '*'.")
    STATIC_DIR: str = "./public"

    # External IP geolocation provider (ip-api.com compatible JSON)
    GEOIP_BASE_URL: str = "https://ip-api.com/json"
    GEOIP_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    GEOIP_CACHE_TTL_SECONDS: float = Field(default=600.0, ge=0)
    GEOIP_LOCAL_ADDRESSES: List[str] = Field(default_factory=lambda: ["::1", "127.0.0.1", "localhost"])
    GEOIP_CACHE_MAX_ENTRIES: int = Field(default=1024, gt=0)

    # Client-side map rendering
    TRAJECTORY_LIMIT: int = Field(default=200, gt=0)
    MAP_SCALE: float = Field(default=100000.0, gt=0, description="Pixels per degree.")
    MAP_CENTER_LAT: float = Field(default=40.7128, ge=-90, le=90)
    MAP_CENTER_LNG: float = Field(default=-74.0060, ge=-180, le=180)
    MAP_WIDTH: int = Field(default=1280, gt=0)
    MAP_HEIGHT: int = Field(default=720, gt=0)
    MAP_PIXEL_RATIO: float = Field(default=1.0, gt=0)
    MOVING_SPEED_THRESHOLD_MPS: float = Field(default=0.5, ge=0)

    model_config = {
        "extra": "ignore",
        "env_file": ".env",
        "env_file_encoding": "utf-8"
    }

    @property
    def resolved_static_dir(self) -> Path:
        return Path(self.STATIC_DIR).resolve()

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGIN.split(",") if origin.strip()]

settings = Settings()
