from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType

from markmaster.config import Settings
from markmaster.discovery import is_spreadsheet
from markmaster.errors import DataValidationError, ExtractionError, SourceIOError
from markmaster.schemas import Record
from markmaster.validators import MarkError, is_valid_identifier, parse_mark
from markmaster import workbook
from markmaster.workbook import InvalidAddressError, WorkbookError, WorkbookFormatError, WorkbookHandle


class RecordExtractor:
    """Reads one student workbook into a validated Record.

    Extraction is all-or-nothing: any failing field aborts the file.
    """

    def __init__(self, settings: Settings, opener: Callable[[Path], WorkbookHandle] | None = None) -> None:
        self.settings = settings
        self.opener = opener or workbook.open_for_read
        self.mark_cells = settings.field_mapping.source_keys

    def extract(self, path: Path | str) -> Record:
        path = Path(path)
        if not is_spreadsheet(path):
            raise ExtractionError(path, "validation", f"unsupported file format {path.suffix or '(none)'}")

        try:
            handle = self.opener(path)
        except WorkbookFormatError as exc:
            raise ExtractionError(path, "opening", "unsupported or corrupt spreadsheet", cause=exc) from exc
        except (WorkbookError, OSError) as exc:
            raise SourceIOError(path, "opening", "failed to open spreadsheet", cause=exc) from exc

        with handle:
            return self._read(path, handle)

    def _read(self, path: Path, handle: WorkbookHandle) -> Record:
        sheet = self.settings.student_sheet_name
        if sheet not in handle.sheet_names():
            raise ExtractionError(path, "worksheet_validation", f"worksheet '{sheet}' not found")

        identifier = self._cell(path, handle, self.settings.student_id_cell, "identifier_reading").strip()
        if not identifier:
            raise DataValidationError(
                path,
                field="student_id",
                value=identifier,
                reason="identifier_empty",
                message="student ID is empty",
            )
        if not is_valid_identifier(identifier):
            raise DataValidationError(
                path,
                field="student_id",
                value=identifier,
                reason="identifier_format",
                message="student ID contains invalid characters (only alphanumeric allowed)",
            )

        fields: dict[str, float | None] = {}
        for cell in self.mark_cells:
            text = self._cell(path, handle, cell, "mark_reading").strip()
            try:
                fields[cell] = parse_mark(text)
            except MarkError as exc:
                raise DataValidationError(
                    path,
                    field=f"mark_{cell}",
                    value=text,
                    reason=exc.reason,
                    message=str(exc),
                ) from exc

        return Record(
            identifier=identifier,
            source_path=str(path),
            fields=MappingProxyType(fields),
            extracted_at=datetime.now(UTC),
        )

    def _cell(self, path: Path, handle: WorkbookHandle, address: str, stage: str) -> str:
        try:
            return handle.cell_text(self.settings.student_sheet_name, address)
        except InvalidAddressError as exc:
            # A configuration mistake, identical for every file.
            raise ExtractionError(path, stage, f"invalid cell address {address!r}", cause=exc) from exc
        except WorkbookError as exc:
            raise SourceIOError(path, stage, f"failed to read cell {address}", cause=exc) from exc
