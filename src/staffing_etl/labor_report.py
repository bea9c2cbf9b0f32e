"""staffing_etl.labor_report

Weekly time-and-attendance grid → LaborReport.

Layout expected of the first sheet:
  - a day-header row (within the first HEADER_SCAN_ROWS rows) holding at
    least three weekday labels; merged day cells are carried rightwards
  - the row beneath it holding Reg / OT sub-headers under each day
  - associate rows below, in shift blocks: a "Shift 1 Total" row ends the
    1st-shift block, a "Shift 2 Total" row ends the 2nd
  - total / summary rows anywhere, which are skipped

Labor type comes from the department code found on the row:
    004-251-211 → Direct, 005-251-221 → Indirect
Any other code (or none) is "Split": DIRECT_HOURS_SHARE of the hours are
counted as direct and the remainder as indirect.

Associate identity uses named columns (EID / Employee ID / File,
Name / Employee, Dept) when the header rows carry them, and falls back to
scanning the first columns for a 4+ digit id and a name-like string.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from staffing_etl.errors import SourceReadError
from staffing_etl.normalize import normalize_header_key, to_date, to_number, to_trimmed_string
from staffing_etl.sources import read_grid
from staffing_etl.store import SERVER_TIMESTAMP

log = logging.getLogger(__name__)

DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_DAY_LABELS = {
    "mon": "monday", "tue": "tuesday", "tues": "tuesday", "wed": "wednesday",
    "thu": "thursday", "thur": "thursday", "thurs": "thursday", "fri": "friday",
    "sat": "saturday", "sun": "sunday",
    **{d: d for d in DAYS},
}

DIRECT_DEPT_CODE = "004-251-211"
INDIRECT_DEPT_CODE = "005-251-221"

# Share of an unclassified row's hours counted as direct labor.
DIRECT_HOURS_SHARE = 0.8

LABOR_DIRECT = "Direct"
LABOR_INDIRECT = "Indirect"
LABOR_SPLIT = "Split"

SHIFT_1 = "1st"
SHIFT_2 = "2nd"

HEADER_SCAN_ROWS = 15
WEEK_ENDING_SCAN_ROWS = 30
WEEK_ENDING_SCAN_COLS = 20
IDENTITY_SCAN_COLS = 15
MARKER_SCAN_COLS = 10

ID_HEADER_KEYS = frozenset({"eid", "employeeid", "empid", "file", "fileno", "filenumber"})
NAME_HEADER_KEYS = frozenset({"name", "employee", "employeename", "associatename", "associate"})
DEPT_HEADER_KEYS = frozenset({"dept", "deptcode", "department", "homedepartment", "costcenter"})

_DEPT_CODE_RE = re.compile(r"\d{3}-\d{3}-\d{3}")
_EID_RE = re.compile(r"^\d{4,}$")
_DATE_IN_TEXT_RE = re.compile(r"(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}|\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2})")
_TOTAL_MARKERS = ("total", "grand", "summary")

# Spreadsheet serials outside this window are hours or ids, not dates.
_SERIAL_MIN = 30000
_SERIAL_MAX = 80000


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class DayHours:
    reg: float = 0.0
    ot: float = 0.0

    @property
    def total(self) -> float:
        return self.reg + self.ot


@dataclass
class EmployeeHours:
    eid: str | None
    name: str | None
    dept_code: str | None
    labor_type: str
    shift: str
    daily: dict[str, DayHours]
    direct_share: float = DIRECT_HOURS_SHARE

    @property
    def reg_hours(self) -> float:
        return sum(d.reg for d in self.daily.values())

    @property
    def ot_hours(self) -> float:
        return sum(d.ot for d in self.daily.values())

    @property
    def weekly_total(self) -> float:
        return sum(d.total for d in self.daily.values())

    @property
    def direct_hours(self) -> float:
        return split_hours(self.weekly_total, self.labor_type, self.direct_share)[0]

    @property
    def indirect_hours(self) -> float:
        return split_hours(self.weekly_total, self.labor_type, self.direct_share)[1]


def _empty_breakdown() -> dict[str, dict[str, Any]]:
    return {
        day: {
            "shift1": {"direct": 0.0, "indirect": 0.0, "total": 0.0},
            "shift2": {"direct": 0.0, "indirect": 0.0, "total": 0.0},
            "total": 0.0,
        }
        for day in DAYS
    }


@dataclass
class LaborReport:
    week_ending: datetime | None
    file_name: str | None
    total_hours: float = 0.0
    direct_hours: float = 0.0
    indirect_hours: float = 0.0
    employee_count: int = 0
    daily_breakdown: dict[str, dict[str, Any]] = field(default_factory=_empty_breakdown)
    employees: list[EmployeeHours] = field(default_factory=list)

    def to_rows(self) -> list[dict[str, Any]]:
        """One raw row per associate, keyed by labor_report_row field names."""
        return [
            {
                "weekEnding": self.week_ending,
                "eid": e.eid or "",
                "name": e.name or "",
                "deptCode": e.dept_code or "",
                "laborType": e.labor_type,
                "shift": e.shift,
                "regHours": round(e.reg_hours, 2),
                "otHours": round(e.ot_hours, 2),
                "totalHours": round(e.weekly_total, 2),
                "directHours": round(e.direct_hours, 2),
                "indirectHours": round(e.indirect_hours, 2),
                "fileName": self.file_name or "",
            }
            for e in self.employees
        ]

    def to_summary_document(self, submitted_by: str) -> dict[str, Any]:
        """The weekly laborReports document."""
        return {
            "weekEnding": self.week_ending,
            "fileName": self.file_name,
            "totalHours": round(self.total_hours, 2),
            "directHours": round(self.direct_hours, 2),
            "indirectHours": round(self.indirect_hours, 2),
            "employeeCount": self.employee_count,
            "headcount": self.employee_count,
            "dailyBreakdown": self.daily_breakdown,
            "submittedBy": submitted_by,
            "submittedAt": SERVER_TIMESTAMP,
        }


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------

def _cell(grid: list[list[Any]], r: int, c: int) -> Any:
    if r < 0 or r >= len(grid):
        return None
    row = grid[r]
    return row[c] if 0 <= c < len(row) else None


def normalize_day(value: Any) -> str | None:
    s = to_trimmed_string(value).lower().rstrip(".")
    return _DAY_LABELS.get(s)


def parse_date_flexible(value: Any) -> datetime | None:
    """Date from a cell: datetime, plausible serial, or a date inside text."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        if _SERIAL_MIN <= value <= _SERIAL_MAX:
            return to_date(value)
        return None
    text = to_trimmed_string(value)
    if not text:
        return None
    m = _DATE_IN_TEXT_RE.search(text)
    if not m:
        return None
    candidate = m.group(1)
    parsed = to_date(candidate)
    if parsed is None:
        parsed = to_date(re.sub(r"[.\-]", "/", candidate))
    return parsed


def classify_labor_type(values: list[Any]) -> str:
    text = " ".join(to_trimmed_string(v) for v in values)
    if DIRECT_DEPT_CODE in text:
        return LABOR_DIRECT
    if INDIRECT_DEPT_CODE in text:
        return LABOR_INDIRECT
    return LABOR_SPLIT


def split_hours(hours: float, labor_type: str, direct_share: float = DIRECT_HOURS_SHARE) -> tuple[float, float]:
    """(direct, indirect) hours for a row of the given labor type."""
    if labor_type == LABOR_DIRECT:
        return hours, 0.0
    if labor_type == LABOR_INDIRECT:
        return 0.0, hours
    direct = hours * direct_share
    return direct, hours - direct


def _marker_text(values: list[Any]) -> str:
    return " ".join(to_trimmed_string(v).lower() for v in values[:MARKER_SCAN_COLS])


def is_total_row(values: list[Any]) -> bool:
    text = _marker_text(values)
    return any(m in text for m in _TOTAL_MARKERS)


def is_likely_associate_row(values: list[Any]) -> bool:
    for v in values[:MARKER_SCAN_COLS]:
        sv = to_trimmed_string(v)
        if not sv:
            continue
        if _EID_RE.match(sv):
            return True
        if re.search(r"[A-Za-z]", sv) and len(sv) > 2 and "shift" not in sv.lower():
            return True
    return False


# ---------------------------------------------------------------------------
# Layout detection
# ---------------------------------------------------------------------------

@dataclass
class GridLayout:
    day_row: int
    first_data_row: int
    day_cols: dict[str, dict[str, int]]
    id_col: int | None = None
    name_col: int | None = None
    dept_col: int | None = None


def find_layout(grid: list[list[Any]]) -> GridLayout:
    """Locate the day-header row, its Reg/OT columns and any named id columns."""
    day_row = None
    for r in range(min(HEADER_SCAN_ROWS, len(grid))):
        labels = {normalize_day(v) for v in grid[r]} - {None}
        if len(labels) >= 3:
            day_row = r
            break
    if day_row is None:
        raise SourceReadError(
            f"no weekday header row found in the first {HEADER_SCAN_ROWS} rows"
        )

    sub_row = day_row + 1
    width = max(len(grid[day_row]), len(grid[sub_row]) if sub_row < len(grid) else 0)
    has_sub_headers = any(
        _sub_header_kind(_cell(grid, sub_row, c)) for c in range(width)
    )

    day_cols: dict[str, dict[str, int]] = {}
    current_day: str | None = None
    for c in range(width):
        label = _cell(grid, day_row, c)
        if to_trimmed_string(label):
            current_day = normalize_day(label)
        if current_day is None:
            continue
        if not has_sub_headers:
            if normalize_day(label):
                day_cols.setdefault(current_day, {})["reg"] = c
            continue
        kind = _sub_header_kind(_cell(grid, sub_row, c))
        if kind and kind not in day_cols.get(current_day, {}):
            day_cols.setdefault(current_day, {})[kind] = c

    layout = GridLayout(
        day_row=day_row,
        first_data_row=sub_row + 1 if has_sub_headers else sub_row,
        day_cols=day_cols,
    )
    header_rows = (day_row, sub_row) if has_sub_headers else (day_row,)
    for r in header_rows:
        for c, v in enumerate(grid[r] if r < len(grid) else []):
            key = normalize_header_key(v)
            if key in ID_HEADER_KEYS and layout.id_col is None:
                layout.id_col = c
            elif key in NAME_HEADER_KEYS and layout.name_col is None:
                layout.name_col = c
            elif key in DEPT_HEADER_KEYS and layout.dept_col is None:
                layout.dept_col = c
    return layout


def _sub_header_kind(value: Any) -> str | None:
    s = to_trimmed_string(value).lower()
    if not s:
        return None
    if s.startswith("reg"):
        return "reg"
    if s == "ot" or s.startswith("ot ") or "overtime" in s:
        return "ot"
    return None


def find_week_ending(grid: list[list[Any]], file_name: str | None = None) -> datetime | None:
    """'Week Ending' label + same/adjacent cell, then any top-block date, then file name."""
    rows = min(WEEK_ENDING_SCAN_ROWS, len(grid))
    for r in range(rows):
        for c in range(min(WEEK_ENDING_SCAN_COLS, len(grid[r]))):
            v = grid[r][c]
            if isinstance(v, str) and "week ending" in v.lower():
                parsed = parse_date_flexible(v)
                if parsed:
                    return parsed
                for dc in range(1, 4):
                    parsed = parse_date_flexible(_cell(grid, r, c + dc))
                    if parsed:
                        return parsed
    for r in range(rows):
        for c in range(min(WEEK_ENDING_SCAN_COLS, len(grid[r]))):
            parsed = parse_date_flexible(grid[r][c])
            if parsed:
                return parsed
    if file_name:
        return parse_date_flexible(file_name)
    return None


def _identity(values: list[Any], layout: GridLayout) -> tuple[str | None, str | None, str | None]:
    eid = to_trimmed_string(_at(values, layout.id_col)) or None
    name = to_trimmed_string(_at(values, layout.name_col)) or None
    dept = to_trimmed_string(_at(values, layout.dept_col)) or None

    # Positional fallback for whatever the header rows did not name.
    for v in values[:IDENTITY_SCAN_COLS]:
        sv = to_trimmed_string(v)
        if not sv:
            continue
        m = _DEPT_CODE_RE.search(sv)
        if dept is None and m:
            dept = m.group(0)
        if layout.id_col is None and eid is None and _EID_RE.match(sv):
            eid = sv
        if (
            layout.name_col is None
            and name is None
            and re.search(r"[A-Za-z]", sv)
            and len(sv) > 3
            and "shift" not in sv.lower()
        ):
            name = sv
    return eid, name, dept


def _at(values: list[Any], idx: int | None) -> Any:
    if idx is None or idx >= len(values):
        return None
    return values[idx]


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------

def parse_labor_grid(
    grid: list[list[Any]],
    file_name: str | None = None,
    direct_share: float = DIRECT_HOURS_SHARE,
) -> LaborReport:
    layout = find_layout(grid)
    report = LaborReport(week_ending=find_week_ending(grid, file_name), file_name=file_name)
    shift = SHIFT_1

    for r in range(layout.first_data_row, len(grid)):
        values = list(grid[r])
        marker = _marker_text(values)
        if "shift 1 total" in marker:
            shift = SHIFT_2
            continue
        if "shift 2 total" in marker:
            shift = SHIFT_1
            continue
        if is_total_row(values) or not is_likely_associate_row(values):
            continue

        daily: dict[str, DayHours] = {}
        for day in DAYS:
            cols = layout.day_cols.get(day, {})
            daily[day] = DayHours(
                reg=to_number(_at(values, cols.get("reg"))),
                ot=to_number(_at(values, cols.get("ot"))),
            )
        if sum(d.total for d in daily.values()) <= 0:
            continue

        eid, name, dept = _identity(values, layout)
        employee = EmployeeHours(
            eid=eid,
            name=name,
            dept_code=dept,
            labor_type=classify_labor_type(values),
            shift=shift,
            daily=daily,
            direct_share=direct_share,
        )
        report.employees.append(employee)

        block = "shift1" if shift == SHIFT_1 else "shift2"
        for day, hours in daily.items():
            if hours.total <= 0:
                continue
            direct, indirect = split_hours(hours.total, employee.labor_type, direct_share)
            report.daily_breakdown[day][block]["direct"] += direct
            report.daily_breakdown[day][block]["indirect"] += indirect

    for day in DAYS:
        d = report.daily_breakdown[day]
        for block in ("shift1", "shift2"):
            d[block]["total"] = d[block]["direct"] + d[block]["indirect"]
        d["total"] = d["shift1"]["total"] + d["shift2"]["total"]
        report.direct_hours += d["shift1"]["direct"] + d["shift2"]["direct"]
        report.indirect_hours += d["shift1"]["indirect"] + d["shift2"]["indirect"]
        report.total_hours += d["total"]
    report.employee_count = len(report.employees)
    log.debug(
        "%s: %d associates, %.2f hours (week ending %s)",
        file_name, report.employee_count, report.total_hours, report.week_ending,
    )
    return report


def parse_labor_report(path: Path, direct_share: float = DIRECT_HOURS_SHARE) -> LaborReport:
    path = Path(path)
    return parse_labor_grid(read_grid(path), path.name, direct_share)
