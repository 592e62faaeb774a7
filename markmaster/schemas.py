from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class FieldMapping:
    pairs: tuple[tuple[str, str], ...]

    def __post_init__(self) -> None:
        if not self.pairs:
            raise ValueError("field mapping needs at least one (source, destination) pair")

    @classmethod
    def from_lists(cls, source_cells: tuple[str, ...], destination_columns: tuple[str, ...]) -> "FieldMapping":
        if len(source_cells) != len(destination_columns):
            raise ValueError("source cells and destination columns must have the same length")
        return cls(tuple(zip(source_cells, destination_columns)))

    @property
    def source_keys(self) -> tuple[str, ...]:
        return tuple(source for source, _ in self.pairs)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(self.pairs)

    def __len__(self) -> int:
        return len(self.pairs)


@dataclass(frozen=True)
class Record:
    identifier: str
    source_path: str
    # None marks an absent (ungraded) field.
    fields: Mapping[str, float | None]
    extracted_at: datetime

    @property
    def mark_count(self) -> int:
        return sum(1 for value in self.fields.values() if value is not None)


@dataclass(frozen=True)
class Succeeded:
    path: str
    record: Record
    attempts: int
    duration_ms: float
    status: str = "succeeded"


@dataclass(frozen=True)
class Skipped:
    path: str
    reason: str
    classification: str
    attempts: int
    duration_ms: float
    status: str = "skipped"


@dataclass(frozen=True)
class Failed:
    path: str
    reason: str
    classification: str
    attempts: int
    duration_ms: float
    status: str = "failed"


Outcome = Succeeded | Skipped | Failed


@dataclass
class MergeSummary:
    records_merged: int = 0
    records_not_matched: int = 0
    fields_written: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class Summary:
    run_key: str
    dry_run: bool
    start_time: datetime
    status: str = "running"
    total_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    skipped_files: int = 0
    records_merged: int = 0
    records_not_matched: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    end_time: datetime | None = None
    backup_path: str | None = None
    output_path: str | None = None
    run_id: int | None = None

    @property
    def completed_files(self) -> int:
        return self.successful_files + self.failed_files + self.skipped_files

    @property
    def duration_seconds(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


@dataclass(frozen=True)
class RunStatistics:
    total_discovered: int
    discovery_errors: list[str]
    student_files_dir: str
    master_sheet_path: str
    max_concurrent_files: int
    backup_enabled: bool
    last_run_status: str | None
