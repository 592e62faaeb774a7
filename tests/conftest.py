from collections.abc import Callable, Generator
from pathlib import Path

from openpyxl import Workbook
import pytest
from sqlalchemy.orm import Session, sessionmaker

from markmaster.config import Settings
from markmaster.database import build_session_factory
from markmaster.processor import Consolidator


STUDENT_SHEET = "Grading Sheet"
MASTER_SHEET = "001"


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "StudentFiles").mkdir(parents=True, exist_ok=True)
    (tmp_path / "MasterSheet").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="markmaster",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        log_file=None,
        student_files_dir=str(temp_workspace / "StudentFiles"),
        master_sheet_path=str(temp_workspace / "MasterSheet" / "master.xlsx"),
        output_dir=str(temp_workspace / "output"),
        backup_dir=str(temp_workspace / "backups"),
        student_sheet_name=STUDENT_SHEET,
        master_sheet_name=MASTER_SHEET,
        student_id_cell="B2",
        master_id_column="B",
        mark_cells=("C6", "C7"),
        master_columns=("I", "J"),
        mark_precision=2,
        max_concurrent_files=4,
        backup_enabled=True,
        skip_invalid_files=True,
        update_in_place=True,
        timeout_seconds=0,
        retry_attempts=1,
        retry_backoff_seconds=0,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def consolidator(test_settings: Settings, session_factory: sessionmaker[Session]) -> Generator[Consolidator, None, None]:
    yield Consolidator(test_settings, session_factory)


@pytest.fixture()
def write_student_file() -> Callable[..., Path]:
    def write(
        path: Path,
        student_id: object,
        marks: dict[str, object] | None = None,
        sheet: str = STUDENT_SHEET,
    ) -> Path:
        book = Workbook()
        worksheet = book.active
        worksheet.title = sheet
        worksheet["A2"] = "Student ID"
        worksheet["B2"] = student_id
        for address, value in (marks or {}).items():
            worksheet[address] = value
        path.parent.mkdir(parents=True, exist_ok=True)
        book.save(path)
        return path

    return write


@pytest.fixture()
def write_master() -> Callable[..., Path]:
    def write(path: Path, identifiers: list[str], sheet: str = MASTER_SHEET) -> Path:
        book = Workbook()
        worksheet = book.active
        worksheet.title = sheet
        worksheet["A1"] = "No"
        worksheet["B1"] = "Student ID"
        worksheet["C1"] = "Name"
        worksheet["I1"] = "CW1"
        worksheet["J1"] = "CW2"
        for offset, identifier in enumerate(identifiers):
            row = offset + 2
            worksheet.cell(row=row, column=1, value=offset + 1)
            worksheet.cell(row=row, column=2, value=identifier)
            worksheet.cell(row=row, column=3, value=f"Student {offset + 1}")
        path.parent.mkdir(parents=True, exist_ok=True)
        book.save(path)
        return path

    return write


@pytest.fixture()
def master_path(test_settings: Settings, write_master) -> Path:
    return write_master(Path(test_settings.master_sheet_path), ["STU001", "STU002"])
