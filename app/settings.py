from pydantic import BaseModel
from dotenv import load_dotenv
import os

load_dotenv()


def _env_int(name: str, default: int) -> int:
    v = (os.getenv(name) or "").strip()
    try:
        return int(v) if v else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


class Settings(BaseModel):
    db_path: str = os.getenv("DB_PATH", "library.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # keyboard-wedge scanners burst keys much faster than people type
    keyboard_idle_timeout_ms: int = _env_int("KEYBOARD_IDLE_TIMEOUT_MS", 100)
    keyboard_min_length: int = _env_int("KEYBOARD_MIN_LENGTH", 3)
    keyboard_timeout_flush_length: int = _env_int("KEYBOARD_TIMEOUT_FLUSH_LENGTH", 8)
    scan_cooldown_ms: int = _env_int("SCAN_COOLDOWN_MS", 1000)
    # scan dialogs not heard from for this long are closed; 0 keeps them forever
    scan_session_idle_timeout_s: int = _env_int("SCAN_SESSION_IDLE_TIMEOUT_S", 900)

    opaque_min_length: int = _env_int("OPAQUE_MIN_LENGTH", 8)
    isbn_strict_checksum: bool = _env_bool("ISBN_STRICT_CHECKSUM", True)

    camera_device: int = _env_int("CAMERA_DEVICE", 0)
    camera_frame_interval_ms: int = _env_int("CAMERA_FRAME_INTERVAL_MS", 100)

    import_max_bytes: int = _env_int("IMPORT_MAX_BYTES", 20 * 1024 * 1024)
    import_default_division: str = os.getenv("IMPORT_DEFAULT_DIVISION", "A")

    events_webhook_url: str = os.getenv("EVENTS_WEBHOOK_URL", "")


settings = Settings()
