from dataclasses import replace
from pathlib import Path

import pytest

from markmaster.errors import DataValidationError, ExtractionError, SourceIOError
from markmaster.extractor import RecordExtractor
from markmaster.workbook import WorkbookFormatError


def test_extracts_identifier_and_marks(test_settings, temp_workspace: Path, write_student_file) -> None:
    path = write_student_file(temp_workspace / "a.xlsx", " STU001 ", {"C6": 85.5, "C7": 92})

    record = RecordExtractor(test_settings).extract(path)

    assert record.identifier == "STU001"
    assert record.source_path == str(path)
    assert dict(record.fields) == {"C6": 85.5, "C7": 92.0}
    assert record.mark_count == 2


def test_empty_mark_is_stored_as_absent(test_settings, temp_workspace: Path, write_student_file) -> None:
    path = write_student_file(temp_workspace / "a.xlsx", "STU001", {"C6": 70, "C7": "   "})

    record = RecordExtractor(test_settings).extract(path)

    assert record.fields["C6"] == 70.0
    assert record.fields["C7"] is None
    assert record.mark_count == 1


def test_record_fields_are_read_only(test_settings, temp_workspace: Path, write_student_file) -> None:
    path = write_student_file(temp_workspace / "a.xlsx", "STU001", {"C6": 70})
    record = RecordExtractor(test_settings).extract(path)

    with pytest.raises(TypeError):
        record.fields["C6"] = 1.0  # type: ignore[index]


def test_numeric_identifier_cell_is_accepted(test_settings, temp_workspace: Path, write_student_file) -> None:
    path = write_student_file(temp_workspace / "a.xlsx", 12345, {"C6": 50})

    assert RecordExtractor(test_settings).extract(path).identifier == "12345"


@pytest.mark.parametrize(
    "marks,reason",
    [
        ({"C6": "abc"}, "mark_not_numeric"),
        ({"C6": 80, "C7": 150}, "mark_out_of_range"),
        ({"C6": -1}, "mark_out_of_range"),
    ],
)
def test_invalid_mark_rejects_whole_record(test_settings, temp_workspace: Path, write_student_file, marks, reason) -> None:
    path = write_student_file(temp_workspace / "a.xlsx", "STU001", marks)

    with pytest.raises(DataValidationError) as exc_info:
        RecordExtractor(test_settings).extract(path)

    assert exc_info.value.reason == reason
    assert exc_info.value.retryable is False
    assert exc_info.value.classification == "validation"


@pytest.mark.parametrize("student_id,reason", [("   ", "identifier_empty"), (None, "identifier_empty"), ("STU 001", "identifier_format"), ("STU-1", "identifier_format")])
def test_invalid_identifier_is_rejected(test_settings, temp_workspace: Path, write_student_file, student_id, reason) -> None:
    path = write_student_file(temp_workspace / "a.xlsx", student_id, {"C6": 50})

    with pytest.raises(DataValidationError) as exc_info:
        RecordExtractor(test_settings).extract(path)

    assert exc_info.value.reason == reason
    assert exc_info.value.field == "student_id"


def test_missing_worksheet_is_validation_error(test_settings, temp_workspace: Path, write_student_file) -> None:
    path = write_student_file(temp_workspace / "a.xlsx", "STU001", {"C6": 50}, sheet="Other")

    with pytest.raises(ExtractionError) as exc_info:
        RecordExtractor(test_settings).extract(path)

    assert exc_info.value.stage == "worksheet_validation"
    assert exc_info.value.retryable is False


def test_unsupported_extension_is_rejected_before_opening(test_settings, temp_workspace: Path) -> None:
    path = temp_workspace / "marks.csv"
    path.write_text("STU001,50\n", encoding="utf-8")
    opened: list[Path] = []

    extractor = RecordExtractor(test_settings, opener=lambda p: opened.append(p))
    with pytest.raises(ExtractionError) as exc_info:
        extractor.extract(path)

    assert exc_info.value.stage == "validation"
    assert opened == []


def test_unreadable_file_is_retryable_io_error(test_settings, temp_workspace: Path) -> None:
    path = temp_workspace / "broken.xlsx"
    path.write_bytes(b"not a zip archive")

    with pytest.raises(SourceIOError) as exc_info:
        RecordExtractor(test_settings).extract(path)

    assert exc_info.value.stage == "opening"
    assert exc_info.value.retryable is True
    assert exc_info.value.cause is not None


def test_only_mapped_cells_are_read(test_settings, temp_workspace: Path, write_student_file) -> None:
    settings = replace(test_settings, mark_cells=("C6",), master_columns=("I",))
    path = write_student_file(temp_workspace / "a.xlsx", "STU001", {"C6": 40, "C7": "not checked"})

    record = RecordExtractor(settings).extract(path)

    assert dict(record.fields) == {"C6": 40.0}


def test_unsupported_format_is_not_retryable(test_settings, temp_workspace: Path) -> None:
    def opener(path: Path):
        raise WorkbookFormatError(f"unsupported or corrupt .xls workbook {path}")

    with pytest.raises(ExtractionError) as exc_info:
        RecordExtractor(test_settings, opener=opener).extract(temp_workspace / "old.xls")

    assert not isinstance(exc_info.value, SourceIOError)
    assert exc_info.value.stage == "opening"
    assert exc_info.value.retryable is False


@pytest.mark.parametrize("field", ["student_id_cell", "mark_cells"])
def test_invalid_cell_address_is_not_retryable(
    test_settings, temp_workspace: Path, write_student_file, field: str
) -> None:
    path = write_student_file(temp_workspace / "a.xlsx", "STU001", {"C6": 70})
    bad = "not-a-cell" if field == "student_id_cell" else ("C6", "C0")
    settings = replace(test_settings, **{field: bad})

    with pytest.raises(ExtractionError) as exc_info:
        RecordExtractor(settings).extract(path)

    assert not isinstance(exc_info.value, SourceIOError)
    assert exc_info.value.retryable is False
    assert "invalid cell address" in str(exc_info.value)
