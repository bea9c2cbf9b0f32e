"""staffing_etl.sources

Input adapters: spreadsheet / delimited-text files → raw rows.

  .xlsx / .xlsm  openpyxl, first sheet only, values not formulas
  .xls           xlrd, first sheet only, date cells converted to datetime
  .csv           csv module, utf-8-sig (Excel's BOM is dropped)

Row 1 is the header.  Fully blank rows are dropped so that row numbers
reported downstream count only rows that carry data.
"""

from __future__ import annotations

import csv
import logging
import zipfile
from pathlib import Path
from typing import Any

import xlrd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from staffing_etl.errors import FileTooLargeError, SourceReadError

log = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024

SPREADSHEET_EXTENSIONS = (".xlsx", ".xlsm", ".xls")
SUPPORTED_EXTENSIONS = SPREADSHEET_EXTENSIONS + (".csv",)


def check_size(path: Path, limit: int = MAX_UPLOAD_BYTES) -> None:
    size = path.stat().st_size
    if size > limit:
        raise FileTooLargeError(
            f"{path.name} is {size / (1024 * 1024):.1f} MB; the limit is "
            f"{limit / (1024 * 1024):.0f} MB"
        )


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _read_xlsx(path: Path) -> list[list[Any]]:
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        if not wb.worksheets:
            return []
        ws = wb.worksheets[0]
        return [list(row) for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def _read_xls(path: Path) -> list[list[Any]]:
    book = xlrd.open_workbook(str(path))
    if book.nsheets == 0:
        return []
    sheet = book.sheet_by_index(0)
    grid: list[list[Any]] = []
    for r in range(sheet.nrows):
        row: list[Any] = []
        for cell in sheet.row(r):
            if cell.ctype == xlrd.XL_CELL_DATE:
                try:
                    row.append(xlrd.xldate_as_datetime(cell.value, book.datemode))
                except (ValueError, OverflowError, xlrd.xldate.XLDateError):
                    row.append(cell.value)
            elif cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
                row.append(None)
            else:
                row.append(cell.value)
        grid.append(row)
    return grid


def _read_csv(path: Path) -> list[list[Any]]:
    with open(path, newline="", encoding="utf-8-sig") as fh:
        return [list(row) for row in csv.reader(fh)]


def read_grid(path: Path, enforce_size_limit: bool = False) -> list[list[Any]]:
    """Return the first sheet of path as a list of raw cell rows."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise SourceReadError(
            f"Unsupported file type '{suffix}' for {path.name}; "
            f"expected one of {', '.join(SUPPORTED_EXTENSIONS)}"
        )
    if not path.is_file():
        raise SourceReadError(f"File not found: {path}")
    if enforce_size_limit:
        check_size(path)
    try:
        if suffix == ".csv":
            grid = _read_csv(path)
        elif suffix == ".xls":
            grid = _read_xls(path)
        else:
            grid = _read_xlsx(path)
    except (OSError, ValueError, csv.Error, zipfile.BadZipFile,
            InvalidFileException, xlrd.XLRDError) as exc:
        raise SourceReadError(f"Cannot read {path.name}: {exc}") from exc
    log.debug("read %d grid rows from %s", len(grid), path)
    return grid


def grid_to_rows(grid: list[list[Any]]) -> list[dict[str, Any]]:
    """Header row 1 → list of {header: value}; blank rows dropped.

    Headers that are blank get positional names (column_N) so their values
    are not lost; the normalizer simply passes them through unused.
    """
    if not grid:
        return []
    header = [
        str(h).strip() if not _blank(h) else f"column_{i + 1}"
        for i, h in enumerate(grid[0])
    ]
    rows: list[dict[str, Any]] = []
    for raw in grid[1:]:
        if all(_blank(v) for v in raw):
            continue
        row: dict[str, Any] = {}
        for i, key in enumerate(header):
            value = raw[i] if i < len(raw) else None
            if key in row and _blank(value):
                continue
            row[key] = value
        rows.append(row)
    return rows


def read_rows(path: Path, enforce_size_limit: bool = False) -> list[dict[str, Any]]:
    """Read path into raw rows keyed by the file's own header text."""
    path = Path(path)
    if path.suffix.lower() == ".csv":
        if not path.is_file():
            raise SourceReadError(f"File not found: {path}")
        if enforce_size_limit:
            check_size(path)
        try:
            with open(path, newline="", encoding="utf-8-sig") as fh:
                reader = csv.DictReader(fh)
                return [
                    {k.strip(): v for k, v in row.items() if k is not None}
                    for row in reader
                    if any(isinstance(v, str) and v.strip() for v in row.values())
                ]
        except (OSError, ValueError, csv.Error) as exc:
            raise SourceReadError(f"Cannot read {path.name}: {exc}") from exc
    return grid_to_rows(read_grid(path, enforce_size_limit))


def list_source_files(
    directory: Path,
    extensions: tuple[str, ...] = SPREADSHEET_EXTENSIONS,
) -> list[Path]:
    """Spreadsheets in directory, sorted by name; Excel lock files skipped."""
    directory = Path(directory)
    if not directory.is_dir():
        raise SourceReadError(f"Not a directory: {directory}")
    return sorted(
        p for p in directory.iterdir()
        if p.is_file()
        and p.suffix.lower() in extensions
        and not p.name.startswith("~$")
    )
