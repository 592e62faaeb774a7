"""Narrow spreadsheet capability used by the extractor and the merge engine.

Only flat addressing is supported: a column letter plus a row number inside
one named sheet. Everything format specific stays behind this module.
Workbooks are written with openpyxl; legacy ``.xls`` files can be read
through xlrd but never written.
"""

from datetime import date, datetime
import os
from pathlib import Path
import shutil
import tempfile
import zipfile

from openpyxl import load_workbook
from openpyxl.utils.cell import column_index_from_string, coordinate_to_tuple
from openpyxl.utils.exceptions import CellCoordinatesException, InvalidFileException
from openpyxl.workbook.workbook import Workbook
import xlrd
from xlrd.book import Book as XlsBook
from xlrd.compdoc import CompDocError
from xlrd.xldate import XLDateError, xldate_as_datetime


LEGACY_EXTENSION = ".xls"

_OPEN_ERRORS = (OSError, zipfile.BadZipFile, KeyError, ValueError)


class WorkbookError(Exception):
    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message if cause is None else f"{message}: {cause}")


class WorkbookFormatError(WorkbookError):
    """The file is in a format the reader cannot handle; reopening won't help."""


class InvalidAddressError(WorkbookError):
    pass


def column_index(letter: str) -> int:
    try:
        return column_index_from_string(letter.strip().upper())
    except (ValueError, AttributeError) as exc:
        raise InvalidAddressError(f"invalid column {letter!r}", exc) from exc


def cell_coordinates(address: str) -> tuple[int, int]:
    """Return the 1-based (row, column) of an ``A1`` style address."""
    try:
        return coordinate_to_tuple(address.strip().upper())
    except (CellCoordinatesException, KeyError, ValueError, TypeError, AttributeError) as exc:
        raise InvalidAddressError(f"invalid cell address {address!r}", exc) from exc


def cell_to_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _strip_trailing_empty(rows: list[list[str]]) -> list[list[str]]:
    while rows and not any(text.strip() for text in rows[-1]):
        rows.pop()
    return rows


class WorkbookHandle:
    def __init__(self, path: Path, book: Workbook) -> None:
        self.path = path
        self._book = book

    def __enter__(self) -> "WorkbookHandle":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def sheet_names(self) -> set[str]:
        return set(self._book.sheetnames)

    def _sheet(self, sheet: str):
        if sheet not in self._book.sheetnames:
            raise WorkbookError(f"worksheet {sheet!r} not found in {self.path}")
        return self._book[sheet]

    def cell_text(self, sheet: str, address: str) -> str:
        worksheet = self._sheet(sheet)
        row, column = cell_coordinates(address)
        return cell_to_text(worksheet.cell(row=row, column=column).value)

    def rows(self, sheet: str) -> list[list[str]]:
        """Return every row as text, without trailing empty rows."""
        worksheet = self._sheet(sheet)
        return _strip_trailing_empty(
            [[cell_to_text(value) for value in row] for row in worksheet.iter_rows(values_only=True)]
        )

    def set_numeric_cell(self, sheet: str, address: str, value: float, precision: int = 2) -> None:
        worksheet = self._sheet(sheet)
        row, column = cell_coordinates(address)
        cell = worksheet.cell(row=row, column=column)
        cell.value = round(float(value), precision)
        cell.number_format = "0." + "0" * precision if precision > 0 else "0"

    def save(self, path: Path | str | None = None) -> Path:
        """Save to ``path`` (default: where it was opened from).

        Writes a temporary file next to the target and renames it over the
        target, so a failed save never leaves a half-written workbook.
        """
        target = Path(path) if path is not None else self.path
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.stem}-", suffix=target.suffix, dir=target.parent)
        os.close(fd)
        try:
            self._book.save(tmp_name)
            if target.exists():
                shutil.copymode(target, tmp_name)
            os.replace(tmp_name, target)
        except Exception as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise WorkbookError(f"failed to save workbook to {target}", exc) from exc
        return target

    def close(self) -> None:
        self._book.close()


class LegacyWorkbookHandle(WorkbookHandle):
    """Read-only view of a BIFF ``.xls`` workbook opened with xlrd."""

    def __init__(self, path: Path, book: XlsBook) -> None:
        self.path = path
        self._book = book

    def sheet_names(self) -> set[str]:
        return set(self._book.sheet_names())

    def _sheet(self, sheet: str):
        if sheet not in self._book.sheet_names():
            raise WorkbookError(f"worksheet {sheet!r} not found in {self.path}")
        return self._book.sheet_by_name(sheet)

    def _text(self, cell) -> str:
        if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
            return ""
        if cell.ctype == xlrd.XL_CELL_BOOLEAN:
            return cell_to_text(bool(cell.value))
        if cell.ctype == xlrd.XL_CELL_ERROR:
            return xlrd.error_text_from_code.get(cell.value, "#ERR")
        if cell.ctype == xlrd.XL_CELL_DATE:
            try:
                return cell_to_text(xldate_as_datetime(cell.value, self._book.datemode))
            except XLDateError:
                return cell_to_text(cell.value)
        return cell_to_text(cell.value)

    def cell_text(self, sheet: str, address: str) -> str:
        worksheet = self._sheet(sheet)
        row, column = cell_coordinates(address)
        # xlrd only stores the used range; anything outside it is empty.
        if row > worksheet.nrows or column > worksheet.ncols:
            return ""
        return self._text(worksheet.cell(row - 1, column - 1))

    def rows(self, sheet: str) -> list[list[str]]:
        worksheet = self._sheet(sheet)
        return _strip_trailing_empty(
            [[self._text(cell) for cell in worksheet.row(index)] for index in range(worksheet.nrows)]
        )

    def set_numeric_cell(self, sheet: str, address: str, value: float, precision: int = 2) -> None:
        raise WorkbookFormatError(f"{self.path} is a legacy .xls workbook and cannot be written")

    def save(self, path: Path | str | None = None) -> Path:
        raise WorkbookFormatError(f"{self.path} is a legacy .xls workbook and cannot be written")

    def close(self) -> None:
        self._book.release_resources()


def _open(path: Path | str, *, data_only: bool) -> WorkbookHandle:
    path = Path(path)
    try:
        book = load_workbook(path, data_only=data_only)
    except InvalidFileException as exc:
        raise WorkbookFormatError(f"unsupported spreadsheet format {path}", exc) from exc
    except _OPEN_ERRORS as exc:
        raise WorkbookError(f"failed to open {path}", exc) from exc
    return WorkbookHandle(path, book)


def _open_legacy(path: Path) -> LegacyWorkbookHandle:
    try:
        book = xlrd.open_workbook(str(path))
    except OSError as exc:
        raise WorkbookError(f"failed to open {path}", exc) from exc
    except (xlrd.XLRDError, CompDocError) as exc:
        raise WorkbookFormatError(f"unsupported or corrupt .xls workbook {path}", exc) from exc
    return LegacyWorkbookHandle(path, book)


def open_for_read(path: Path | str) -> WorkbookHandle:
    path = Path(path)
    if path.suffix.lower() == LEGACY_EXTENSION:
        return _open_legacy(path)
    return _open(path, data_only=True)


def open_for_write(path: Path | str) -> WorkbookHandle:
    # data_only would drop formulas on save.
    return _open(path, data_only=False)
