from collections.abc import Iterable, Sequence
import difflib
import logging
from pathlib import Path

from markmaster.errors import MergeError, StructuralError
from markmaster.schemas import FieldMapping, MergeSummary, Record
from markmaster import workbook
from markmaster.workbook import WorkbookError, WorkbookHandle


logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 3


def _normalize(identifier: str) -> str:
    return identifier.strip().casefold()


def identifier_column_values(handle: WorkbookHandle, sheet: str, id_column: str) -> list[str]:
    column = workbook.column_index(id_column)
    return [row[column - 1] if len(row) >= column else "" for row in handle.rows(sheet)]


def validate_destination(path: Path | str, sheet: str) -> None:
    """Check the master workbook before any file is processed."""
    try:
        # Opened the way the merge opens it, so an unwritable format fails here.
        handle = workbook.open_for_write(path)
    except WorkbookError as exc:
        raise StructuralError(f"failed to open master sheet {path}: {exc}") from exc

    with handle:
        if sheet not in handle.sheet_names():
            raise StructuralError(f"master worksheet '{sheet}' not found in {path}")
        if len(handle.rows(sheet)) < 2:
            raise StructuralError(f"master sheet {path} appears to be empty or has no data rows")


def locate(handle: WorkbookHandle, sheet: str, identifier: str, id_column: str) -> int | None:
    """Return the 1-based row of the first matching identifier, or None."""
    target = _normalize(identifier)
    for row_number, value in enumerate(identifier_column_values(handle, sheet, id_column), start=1):
        if _normalize(value) == target:
            return row_number
    return None


def build_row_index(values: Sequence[str]) -> dict[str, int]:
    # First occurrence wins, same as locate().
    index: dict[str, int] = {}
    for row_number, value in enumerate(values, start=1):
        key = _normalize(value)
        if key:
            index.setdefault(key, row_number)
    return index


def suggest_similar(candidates: Iterable[str], identifier: str, limit: int = MAX_SUGGESTIONS) -> list[str]:
    target = _normalize(identifier)
    cleaned = [value.strip() for value in candidates if value.strip()]
    by_key = {_normalize(value): value for value in reversed(cleaned)}

    suggestions = [value for value in cleaned if target in _normalize(value) or _normalize(value) in target]
    for key in difflib.get_close_matches(target, list(by_key), n=limit, cutoff=0.75):
        if by_key[key] not in suggestions:
            suggestions.append(by_key[key])
    return suggestions[:limit]


def apply_record(
    handle: WorkbookHandle,
    sheet: str,
    row: int,
    record: Record,
    mapping: FieldMapping,
    precision: int = 2,
    errors: list[str] | None = None,
) -> int:
    """Write every present field of ``record`` into ``row``.

    Absent fields are left untouched. Returns the number of cells written.
    When ``errors`` is given, a failed cell write is appended there and the
    remaining fields are still written; otherwise the WorkbookError propagates.
    """
    written = 0
    for source_key, column in mapping:
        value = record.fields.get(source_key)
        if value is None:
            continue
        address = f"{column}{row}"
        try:
            handle.set_numeric_cell(sheet, address, value, precision)
        except WorkbookError as exc:
            if errors is None:
                raise
            errors.append(f"Failed to set mark for student {record.identifier} in cell {address}: {exc}")
            continue
        written += 1
    return written


class MergeEngine:
    def __init__(self, *, sheet: str, id_column: str, mapping: FieldMapping, precision: int = 2) -> None:
        self.sheet = sheet
        self.id_column = id_column
        self.mapping = mapping
        self.precision = precision

    def apply_all(
        self,
        destination: Path | str,
        records: Sequence[Record],
        save_path: Path | str | None = None,
    ) -> MergeSummary:
        """Apply all records in one open/save cycle.

        Nothing reaches disk until the single save at the end; ``save_path``
        defaults to the destination itself.
        """
        summary = MergeSummary()
        try:
            handle = workbook.open_for_write(destination)
        except WorkbookError as exc:
            raise MergeError(f"failed to open master sheet {destination}: {exc}") from exc

        with handle:
            if self.sheet not in handle.sheet_names():
                raise MergeError(f"master worksheet '{self.sheet}' not found in {destination}")

            # Mark columns never overlap the identifier column, so one index serves the batch.
            identifiers = identifier_column_values(handle, self.sheet, self.id_column)
            row_index = build_row_index(identifiers)

            for record in records:
                row = row_index.get(_normalize(record.identifier))
                if row is None:
                    self._not_matched(record, identifiers, summary)
                    continue

                written = apply_record(
                    handle,
                    self.sheet,
                    row,
                    record,
                    self.mapping,
                    self.precision,
                    errors=summary.errors,
                )
                summary.fields_written += written
                if written:
                    summary.records_merged += 1

            try:
                saved_to = handle.save(save_path)
            except WorkbookError as exc:
                raise MergeError(str(exc)) from exc

        logger.info(
            "master sheet updated",
            extra={
                "destination": str(saved_to),
                "records_merged": summary.records_merged,
                "records_not_matched": summary.records_not_matched,
                "fields_written": summary.fields_written,
            },
        )
        return summary

    def _not_matched(self, record: Record, identifiers: Sequence[str], summary: MergeSummary) -> None:
        suggestions = suggest_similar(identifiers, record.identifier)
        message = f"Student {record.identifier} not found in master sheet"
        if suggestions:
            message += f" (similar: {', '.join(suggestions)})"

        logger.warning(
            "student ID not found in master sheet",
            extra={"student_id": record.identifier, "file_path": record.source_path, "suggestions": suggestions},
        )
        summary.records_not_matched += 1
        summary.warnings.append(message)
