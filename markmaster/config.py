from dataclasses import dataclass
import os

from dotenv import load_dotenv

from markmaster.errors import ConfigError
from markmaster.schemas import FieldMapping


load_dotenv()

DEFAULT_MARK_CELLS = "C6,C7,C8,C9,C10,C11,C12,C13,C15,C16,C17,C18,C19,C20"
DEFAULT_MASTER_COLUMNS = "I,J,K,L,M,N,O,P,Q,R,S,T,U,V"


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    log_file: str | None
    student_files_dir: str
    master_sheet_path: str
    output_dir: str
    backup_dir: str
    student_sheet_name: str
    master_sheet_name: str
    student_id_cell: str
    master_id_column: str
    mark_cells: tuple[str, ...]
    master_columns: tuple[str, ...]
    mark_precision: int
    max_concurrent_files: int
    backup_enabled: bool
    skip_invalid_files: bool
    update_in_place: bool
    timeout_seconds: float
    retry_attempts: int
    retry_backoff_seconds: float
    schedule_hour_utc: int
    schedule_minute_utc: int
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    @property
    def field_mapping(self) -> FieldMapping:
        return FieldMapping.from_lists(self.mark_cells, self.master_columns)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> tuple[str, ...]:
    return tuple(item.strip().upper() for item in os.getenv(name, default).split(",") if item.strip())


def get_settings() -> Settings:
    settings = Settings(
        app_name=os.getenv("APP_NAME", "markmaster"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./markmaster.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
        student_files_dir=os.getenv("STUDENT_FILES_DIR", "./StudentFiles"),
        master_sheet_path=os.getenv("MASTER_SHEET_PATH", "./MasterSheet/master.xlsx"),
        output_dir=os.getenv("OUTPUT_DIR", "./output"),
        backup_dir=os.getenv("BACKUP_DIR", "./backups"),
        student_sheet_name=os.getenv("STUDENT_SHEET_NAME", "Grading Sheet"),
        master_sheet_name=os.getenv("MASTER_SHEET_NAME", "001"),
        student_id_cell=os.getenv("STUDENT_ID_CELL", "B2").strip().upper(),
        master_id_column=os.getenv("MASTER_ID_COLUMN", "B").strip().upper(),
        mark_cells=_env_list("MARK_CELLS", DEFAULT_MARK_CELLS),
        master_columns=_env_list("MASTER_COLUMNS", DEFAULT_MASTER_COLUMNS),
        mark_precision=int(os.getenv("MARK_PRECISION", "2")),
        max_concurrent_files=int(os.getenv("MAX_CONCURRENT_FILES", "10")),
        backup_enabled=_env_bool("BACKUP_ENABLED", "true"),
        skip_invalid_files=_env_bool("SKIP_INVALID_FILES", "true"),
        update_in_place=_env_bool("UPDATE_IN_PLACE", "true"),
        timeout_seconds=float(os.getenv("TIMEOUT_SECONDS", "300")),
        retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
        log_max_bytes=int(os.getenv("LOG_MAX_BYTES", str(10 * 1024 * 1024))),
        log_backup_count=int(os.getenv("LOG_BACKUP_COUNT", "5")),
    )
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    if not settings.student_files_dir:
        raise ConfigError("STUDENT_FILES_DIR cannot be empty")
    if not settings.master_sheet_path:
        raise ConfigError("MASTER_SHEET_PATH cannot be empty")
    if not settings.output_dir:
        raise ConfigError("OUTPUT_DIR cannot be empty")
    if not settings.mark_cells:
        raise ConfigError("MARK_CELLS cannot be empty")
    if len(settings.mark_cells) != len(settings.master_columns):
        raise ConfigError("MARK_CELLS and MASTER_COLUMNS must have the same length")
    if settings.max_concurrent_files <= 0:
        raise ConfigError("MAX_CONCURRENT_FILES must be greater than 0")
    if settings.timeout_seconds < 0:
        raise ConfigError("TIMEOUT_SECONDS cannot be negative")
    if settings.retry_attempts < 0:
        raise ConfigError("RETRY_ATTEMPTS cannot be negative")
    if settings.mark_precision < 0:
        raise ConfigError("MARK_PRECISION cannot be negative")
