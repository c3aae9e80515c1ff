import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Optional


ASSETS_DIR = Path(__file__).resolve().parent / "assets"
DEFAULT_WATERMARK_ASSET = ASSETS_DIR / "logo.png"


@dataclass
class Settings:
    WORK_DIR: Path
    LOGS_DIR: Path
    MAX_UPLOAD_MB: int
    UPLOAD_CHUNK_SIZE: int
    MIN_FREE_SPACE_MB: int
    WATERMARK_URL: Optional[str]
    WATERMARK_PATH: Optional[Path]
    WATERMARK_ASSET: Path
    WM_WIDTH_PX: int
    FFMPEG_BIN: str
    FFMPEG_PRESET: str
    FFMPEG_CRF: int
    FFMPEG_THREADS: int
    FFMPEG_TIMEOUT_SECONDS: int
    DOWNLOAD_TIMEOUT_SECONDS: int
    DOWNLOAD_RETRIES: int
    MAX_CONCURRENCY: int
    QUEUE_MAX_LENGTH: int
    JOB_TTL_SECONDS: int
    JOB_SWEEP_INTERVAL_SECONDS: int
    HEARTBEAT_SECONDS: int
    HOST: str
    PORT: int
    ALLOWED_ORIGINS: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def max_upload_bytes(self) -> int:
        return self.MAX_UPLOAD_MB * 1024 * 1024

    @classmethod
    def load(cls) -> "Settings":
        def env_path(name: str, default: str) -> Path:
            return Path(os.getenv(name, default))

        def env_int(name: str, default: int) -> int:
            return int(os.getenv(name, str(default)))

        def env_str(name: str) -> Optional[str]:
            value = (os.getenv(name) or "").strip()
            return value or None

        def env_list(name: str) -> FrozenSet[str]:
            raw = os.getenv(name, "")
            return frozenset(item.strip().rstrip("/") for item in raw.split(",") if item.strip())

        max_concurrency = env_int("MAX_CONCURRENCY", 1)
        if max_concurrency < 1:
            raise ValueError("MAX_CONCURRENCY must be >= 1")

        queue_max = env_int("QUEUE_MAX_LENGTH", 4)
        if queue_max < 0:
            raise ValueError("QUEUE_MAX_LENGTH must be >= 0")

        ttl = env_int("JOB_TTL_SECONDS", 3600)
        if ttl < 1:
            raise ValueError("JOB_TTL_SECONDS must be >= 1")

        crf = env_int("FFMPEG_CRF", 20)
        if not (0 <= crf <= 51):
            raise ValueError("FFMPEG_CRF must be 0-51")

        watermark_path = env_str("WATERMARK_PATH")

        return cls(
            WORK_DIR=env_path("WORK_DIR", "/data/work"),
            LOGS_DIR=env_path("LOGS_DIR", "/data/logs"),
            MAX_UPLOAD_MB=env_int("MAX_UPLOAD_MB", 300),
            UPLOAD_CHUNK_SIZE=env_int("UPLOAD_CHUNK_SIZE", 1024 * 1024),
            MIN_FREE_SPACE_MB=env_int("MIN_FREE_SPACE_MB", 100),
            WATERMARK_URL=env_str("WATERMARK_URL"),
            WATERMARK_PATH=Path(watermark_path) if watermark_path else None,
            WATERMARK_ASSET=env_path("WATERMARK_ASSET", str(DEFAULT_WATERMARK_ASSET)),
            WM_WIDTH_PX=max(env_int("WM_WIDTH_PX", 0), 0),
            FFMPEG_BIN=os.getenv("FFMPEG_BIN", "ffmpeg"),
            FFMPEG_PRESET=os.getenv("FFMPEG_PRESET", "ultrafast"),
            FFMPEG_CRF=crf,
            FFMPEG_THREADS=max(env_int("FFMPEG_THREADS", 2), 0),
            FFMPEG_TIMEOUT_SECONDS=env_int("FFMPEG_TIMEOUT_SECONDS", 120),
            DOWNLOAD_TIMEOUT_SECONDS=env_int("DOWNLOAD_TIMEOUT_SECONDS", 120),
            DOWNLOAD_RETRIES=max(env_int("DOWNLOAD_RETRIES", 3), 1),
            MAX_CONCURRENCY=max_concurrency,
            QUEUE_MAX_LENGTH=queue_max,
            JOB_TTL_SECONDS=ttl,
            JOB_SWEEP_INTERVAL_SECONDS=max(env_int("JOB_SWEEP_INTERVAL_SECONDS", 60), 1),
            HEARTBEAT_SECONDS=max(env_int("HEARTBEAT_SECONDS", 25), 1),
            HOST=os.getenv("HOST", "0.0.0.0"),
            PORT=env_int("PORT", 4000),
            ALLOWED_ORIGINS=env_list("ALLOWED_ORIGINS"),
        )
