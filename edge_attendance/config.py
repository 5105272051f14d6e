from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Edge Attendance"
    log_level: str = "INFO"
    data_dir: Path = BASE_DIR / "data"
    log_dir: Path = BASE_DIR / "logs"
    identity_db_path: Path = BASE_DIR / "data" / "identities.db"
    queue_db_path: Path = BASE_DIR / "data" / "attendance_queue.db"
    device_id: str = "edge-device-01"
    location: str | None = None

    # Embedding strategy: "network" (learned) or "histogram" (handcrafted).
    embedder: str = "network"
    embedding_model_path: Path | None = None
    embedding_input_size: int = 160
    embedding_dimension: int = 512
    inference_device: str = "cpu"
    face_detection_enabled: bool = True
    min_face_size: int = 80

    liveness_model_path: Path | None = None
    liveness_input_size: int = 80
    liveness_threshold: float = 0.85
    liveness_consistency_bound: float = 0.3
    liveness_min_live_ratio: float = 0.8
    liveness_required: bool = True

    similarity_threshold: float = 0.75
    distance_threshold: float = 0.80
    min_identification_confidence: float = 0.85

    embedding_cipher_key: str = ""

    remote_identity_url: str = ""
    remote_identity_key: str = ""
    remote_identity_group: str = "edge-attendance"
    attendance_api_url: str = ""
    attendance_api_key: str = ""
    request_timeout_seconds: float = 8.0

    health_url: str = ""
    health_timeout_seconds: float = 1.2
    health_interval_seconds: float = 5.0
    health_debounce_samples: int = Field(default=2, ge=1)

    sync_enabled: bool = True
    sync_interval_seconds: float = 30.0
    sync_settle_seconds: float = 2.0
    retention_days: int = 30


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
