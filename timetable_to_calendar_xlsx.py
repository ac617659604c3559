"""
Excel timetable → ICS calendar generator

- Input: an .xlsx file path (CLI arg). If omitted, the script auto-selects the first .xlsx in the current folder.
- Output: an .ics calendar file with one event per lesson found in the week blocks.
- Approach: read the first sheet with openpyxl into a read-only grid of (text, fill colour) cells, parse the
  module table under the "CODE" header, locate the fixed-height week blocks under each "Time" header
  (skipping recess/reading weeks), merge runs of identically coloured cells into lessons and build the ICS.
"""

import os
import sys
import glob
import argparse
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.datetime import from_excel
from openpyxl.utils.exceptions import InvalidFileException
from ics import Calendar, Event


# Lesson times are always expressed in UTC+8
GMT8 = timezone(timedelta(hours=8), "GMT+8")

MODULE_HEADER = "CODE"
TIME_HEADER = "Time"
WEEK_PREFIX = "Week"
EXAM_LABEL = "EXAM"
DEFAULT_NAME = "Timetable"
DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri")


class TimetableError(Exception):
    """Base exception for timetable conversion errors."""


class TimetableReadError(TimetableError):
    """The workbook could not be opened or holds no sheet."""


@dataclass(frozen=True)
class TableGeometry:
    """Shape of the spreadsheet convention.

    A week block starts at its "Time" header row and spans ``block_height`` rows. Lesson slots
    start ``first_slot_offset`` rows below the header, one row per ``slot_minutes`` from ``day_start``.
    Each weekday occupies a two-column pair; ``day_columns`` holds the left column of every pair.
    """

    block_height: int = 21
    first_slot_offset: int = 2
    date_column: int = 1
    day_columns: tuple[int, ...] = (1, 3, 5, 7, 9)
    day_start: time = time(8, 30)
    slot_minutes: int = 30

    def __post_init__(self) -> None:
        if self.block_height < 1:
            raise ValueError("block_height must be at least 1")
        if self.slot_minutes < 1:
            raise ValueError("slot_minutes must be at least 1")

    @property
    def slot(self) -> timedelta:
        return timedelta(minutes=self.slot_minutes)


DEFAULT_GEOMETRY = TableGeometry()


@dataclass(frozen=True)
class Cell:
    value: str = ""
    fill: str = ""
    raw: object = None


@dataclass(frozen=True)
class Grid:
    """Read-only rows of cells. Rows may be shorter than expected; every access is bounds-checked."""

    rows: tuple[tuple[Cell, ...], ...] = ()

    def __len__(self) -> int:
        return len(self.rows)

    def row_length(self, row: int) -> int:
        if row < 0 or row >= len(self.rows):
            return 0
        return len(self.rows[row])

    def cell(self, row: int, column: int) -> Cell | None:
        if column < 0 or column >= self.row_length(row):
            return None
        return self.rows[row][column]

    def value(self, row: int, column: int) -> str:
        c = self.cell(row, column)
        return c.value if c is not None else ""

    def first_value(self, row: int) -> str:
        return self.value(row, 0)


def cell_text(raw: object) -> str:
    if raw is None:
        return ""
    if isinstance(raw, float) and raw.is_integer():
        return str(int(raw))
    if isinstance(raw, (datetime, date, time)):
        return raw.isoformat()
    return str(raw)


def fill_identifier(xl_cell) -> str:
    """Opaque identifier of a cell's fill colour, "" when the cell has no fill."""
    fill = getattr(xl_cell, "fill", None)
    if fill is None or not getattr(fill, "fill_type", None):
        return ""
    color = getattr(fill, "fgColor", None)
    if color is None:
        return ""
    if color.type == "rgb":
        return str(color.rgb)
    if color.type == "theme":
        return f"theme:{color.theme}:{color.tint}"
    if color.type == "indexed":
        return f"indexed:{color.indexed}"
    return str(color.value)


def make_row(xl_cells) -> tuple[Cell, ...]:
    cells = [Cell(value=cell_text(c.value), fill=fill_identifier(c), raw=c.value) for c in xl_cells]
    # openpyxl pads every row to the sheet width; drop the padding
    while cells and not cells[-1].value and not cells[-1].fill:
        cells.pop()
    return tuple(cells)


# XML parse errors from ElementTree and lxml both derive from SyntaxError
READ_ERRORS = (OSError, InvalidFileException, BadZipFile, KeyError, ValueError, SyntaxError)


def load_grid(xlsx_path: str) -> Grid:
    """Read the first sheet of the workbook into a Grid.

    This is the only step allowed to abort a conversion: any failure to open the workbook
    is raised as TimetableReadError.
    """
    try:
        wb = load_workbook(xlsx_path, data_only=True)
    except READ_ERRORS as e:
        raise TimetableReadError(f"failed to open Excel file: {e}") from e
    try:
        if not wb.worksheets:
            raise TimetableReadError("no sheets found in Excel file")
        ws = wb.worksheets[0]
        rows = tuple(make_row(r) for r in ws.iter_rows(min_row=1, min_col=1))
    except READ_ERRORS as e:
        raise TimetableReadError(f"failed to read Excel sheet: {e}") from e
    finally:
        wb.close()
    return Grid(rows)


class WeekStatus(Enum):
    VALID = "valid"
    MISSING_DATE = "missing-date"
    UNPARSEABLE_DATE = "unparseable-date"


def read_date(cell: Cell | None) -> tuple[datetime | None, WeekStatus]:
    """Read a date cell, keeping its wall-clock value and labelling it UTC+8.

    Accepts datetime/date values and Excel serial numbers (also as numeric text).
    """
    if cell is None or cell.raw is None or (isinstance(cell.raw, str) and not cell.raw.strip()):
        return None, WeekStatus.MISSING_DATE
    raw = cell.raw
    value = None
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, date):
        value = datetime.combine(raw, time())
    elif isinstance(raw, (int, float, str)) and not isinstance(raw, bool):
        try:
            serial = float(raw)
            converted = from_excel(serial)
        except (ValueError, OverflowError, TypeError):
            converted = None
        if isinstance(converted, datetime):
            value = converted
    if value is None:
        return None, WeekStatus.UNPARSEABLE_DATE
    return value.replace(tzinfo=GMT8), WeekStatus.VALID


@dataclass(frozen=True)
class Module:
    code: str
    name: str = ""
    credits: str = ""
    lead: str = ""
    fill: str = ""


@dataclass(frozen=True)
class Lesson:
    module: str
    description: str
    start: datetime
    end: datetime
    location: str = ""


@dataclass(frozen=True)
class WeekTimetable:
    start: datetime
    end: datetime
    lessons: tuple[tuple[Lesson, ...], ...] = ()
    status: WeekStatus = WeekStatus.VALID

    @property
    def lesson_count(self) -> int:
        return sum(len(day) for day in self.lessons)


@dataclass(frozen=True)
class ParsedTimetable:
    name: str
    modules: dict[str, Module] = field(default_factory=dict)
    weeks: list[WeekTimetable] = field(default_factory=list)

    @property
    def lesson_count(self) -> int:
        return sum(w.lesson_count for w in self.weeks)


class ScanState(Enum):
    SEEK_MODULE_HEADER = "seek-module-header"
    READ_MODULE_ROWS = "read-module-rows"
    SEEK_WEEK_HEADER = "seek-week-header"
    VALIDATE_EDGE_CASE = "validate-edge-case"
    SEEK_LESSON_START = "seek-lesson-start"
    MERGE_LESSON_RUN = "merge-lesson-run"
    DONE = "done"


@dataclass(frozen=True)
class Cursor:
    state: ScanState
    row: int


def seek_module_header(grid: Grid, cursor: Cursor) -> Cursor:
    if cursor.row >= len(grid):
        # No "CODE" header anywhere: read the table body from the top
        return Cursor(ScanState.READ_MODULE_ROWS, 0)
    if grid.first_value(cursor.row) == MODULE_HEADER:
        return Cursor(ScanState.READ_MODULE_ROWS, cursor.row + 1)
    return Cursor(ScanState.SEEK_MODULE_HEADER, cursor.row + 1)


def read_module_row(grid: Grid, cursor: Cursor) -> tuple[Cursor, Module | None]:
    row = cursor.row
    # A blank first cell (or an empty row) ends the module table
    if row >= len(grid) or not grid.first_value(row):
        return Cursor(ScanState.SEEK_WEEK_HEADER, row), None
    module = Module(
        code=grid.value(row, 0),
        name=grid.value(row, 1),
        credits=grid.value(row, 2),
        lead=grid.value(row, 3),
        fill=grid.cell(row, 0).fill,
    )
    return Cursor(ScanState.READ_MODULE_ROWS, row + 1), module


def seek_week_header(grid: Grid, cursor: Cursor) -> Cursor:
    if cursor.row >= len(grid):
        return Cursor(ScanState.DONE, cursor.row)
    if is_time_header(grid, cursor.row):
        return Cursor(ScanState.VALIDATE_EDGE_CASE, cursor.row)
    return Cursor(ScanState.SEEK_WEEK_HEADER, cursor.row + 1)


def validate_edge_case(grid: Grid, cursor: Cursor, geometry: TableGeometry = DEFAULT_GEOMETRY) -> tuple[Cursor, int | None]:
    """Accept the "Time" header under the cursor as a block anchor, or skip past its edge-case block."""
    row = cursor.row
    if not is_edge_case_table(grid, row):
        return Cursor(ScanState.SEEK_WEEK_HEADER, row + geometry.block_height), row
    resume = find_next_valid_table_index(grid, row)
    if resume is None:
        return Cursor(ScanState.DONE, row), None
    return Cursor(ScanState.SEEK_WEEK_HEADER, resume), None


def seek_lesson_start(grid: Grid, cursor: Cursor, column: int, block_end: int) -> Cursor:
    row = cursor.row
    if row >= block_end:
        return Cursor(ScanState.DONE, row)
    c = grid.cell(row, column)
    if c is not None and c.fill:
        return Cursor(ScanState.MERGE_LESSON_RUN, row)
    return Cursor(ScanState.SEEK_LESSON_START, row + 1)


def merge_lesson_run(
    grid: Grid,
    cursor: Cursor,
    anchor: int,
    column: int,
    geometry: TableGeometry = DEFAULT_GEOMETRY,
    fallback_date: datetime | None = None,
) -> tuple[Cursor, Lesson | None]:
    lesson, last_row = build_lesson_timeslot(grid, anchor, cursor.row, column, geometry, fallback_date)
    return Cursor(ScanState.SEEK_LESSON_START, last_row + 1), lesson


def build_modules(grid: Grid) -> tuple[dict[str, Module], int]:
    """Map the modules under the "CODE" header by module code.

    Returns the mapping and the index of the row that ended the table. A later row with a
    duplicate code replaces the earlier one.
    """
    cursor = Cursor(ScanState.SEEK_MODULE_HEADER, 0)
    while cursor.state is ScanState.SEEK_MODULE_HEADER:
        cursor = seek_module_header(grid, cursor)
    modules: dict[str, Module] = {}
    while cursor.state is ScanState.READ_MODULE_ROWS:
        cursor, module = read_module_row(grid, cursor)
        if module is not None:
            modules[module.code] = module
    return modules, cursor.row


def is_valid_week_or_exam_row(grid: Grid, row: int) -> bool:
    label = grid.first_value(row)
    return label.startswith(WEEK_PREFIX) or label == EXAM_LABEL


def is_time_header(grid: Grid, row: int) -> bool:
    return grid.first_value(row) == TIME_HEADER


def is_edge_case_table(grid: Grid, time_header_row: int) -> bool:
    """True when the label above the "Time" header is neither "Week…" nor "EXAM" (e.g. "Recess Week")."""
    return not is_valid_week_or_exam_row(grid, time_header_row - 1)


def find_next_valid_table_index(grid: Grid, time_header_row: int) -> int | None:
    for row in range(time_header_row + 1, len(grid)):
        if is_valid_week_or_exam_row(grid, row):
            return row
        if is_time_header(grid, row) and is_valid_week_or_exam_row(grid, row - 1):
            return row
    return None


def locate_week_blocks(grid: Grid, start: int = 0, geometry: TableGeometry = DEFAULT_GEOMETRY) -> list[int]:
    """Return the "Time" header row of every week/exam block at or after ``start``."""
    anchors: list[int] = []
    cursor = Cursor(ScanState.SEEK_WEEK_HEADER, max(start, 0))
    while cursor.state is not ScanState.DONE:
        if cursor.state is ScanState.SEEK_WEEK_HEADER:
            cursor = seek_week_header(grid, cursor)
        else:
            cursor, anchor = validate_edge_case(grid, cursor, geometry)
            if anchor is not None:
                anchors.append(anchor)
    return anchors


def build_lesson_timeslot(
    grid: Grid,
    anchor: int,
    start_row: int,
    column: int,
    geometry: TableGeometry = DEFAULT_GEOMETRY,
    fallback_date: datetime | None = None,
) -> tuple[Lesson | None, int]:
    """Merge the run of same-coloured cells starting at ``start_row`` into one lesson.

    Returns the lesson and the last row it consumed. Out-of-range input, or a day without a
    readable date, returns (None, start_row).
    """
    first = grid.cell(start_row, column)
    if first is None:
        return None, start_row

    day, _ = read_date(grid.cell(anchor, column))
    if day is None:
        day = fallback_date
    if day is None:
        return None, start_row

    day_start = day.replace(
        hour=geometry.day_start.hour, minute=geometry.day_start.minute, second=0, microsecond=0
    )
    start = day_start + geometry.slot * (start_row - anchor - geometry.first_slot_offset)

    # Colour identity is the only contiguity signal
    block_end = min(anchor + geometry.block_height, len(grid))
    last_row = start_row
    while last_row + 1 < block_end:
        nxt = grid.cell(last_row + 1, column)
        if nxt is None or nxt.fill != first.fill:
            break
        last_row += 1
    end = start + geometry.slot * (last_row - start_row + 1)

    lesson = Lesson(
        module="".join(first.value.split()),
        description=grid.value(start_row + 1, column),
        start=start,
        end=end,
        location=grid.value(start_row + 1, column + 1),
    )
    return lesson, last_row


def scan_day_column(
    grid: Grid,
    anchor: int,
    column: int,
    geometry: TableGeometry = DEFAULT_GEOMETRY,
    fallback_date: datetime | None = None,
) -> tuple[Lesson, ...]:
    block_end = min(anchor + geometry.block_height, len(grid))
    cursor = Cursor(ScanState.SEEK_LESSON_START, anchor + geometry.first_slot_offset)
    lessons: list[Lesson] = []
    while cursor.state is not ScanState.DONE:
        if cursor.state is ScanState.SEEK_LESSON_START:
            cursor = seek_lesson_start(grid, cursor, column, block_end)
        else:
            cursor, lesson = merge_lesson_run(grid, cursor, anchor, column, geometry, fallback_date)
            if lesson is not None:
                lessons.append(lesson)
    return tuple(lessons)


def build_week(grid: Grid, anchor: int, geometry: TableGeometry = DEFAULT_GEOMETRY) -> WeekTimetable:
    start, status = read_date(grid.cell(anchor, geometry.date_column))
    if start is None:
        # One bad week must not fail the whole conversion
        now = datetime.now(GMT8)
        return WeekTimetable(
            start=now,
            end=now + timedelta(days=5),
            lessons=tuple(() for _ in geometry.day_columns),
            status=status,
        )
    days = tuple(
        scan_day_column(grid, anchor, column, geometry, fallback_date=start + timedelta(days=idx))
        for idx, column in enumerate(geometry.day_columns)
    )
    return WeekTimetable(start=start, end=start + timedelta(days=5), lessons=days, status=WeekStatus.VALID)


def build_week_timetables(grid: Grid, start: int, geometry: TableGeometry = DEFAULT_GEOMETRY) -> list[WeekTimetable]:
    return [build_week(grid, anchor, geometry) for anchor in locate_week_blocks(grid, start, geometry)]


def derive_display_name(grid: Grid) -> str:
    name = f"{grid.first_value(0)} - {grid.first_value(1)}"
    if name == " - ":
        return DEFAULT_NAME
    return name


def parse_timetable(grid: Grid, geometry: TableGeometry = DEFAULT_GEOMETRY) -> ParsedTimetable:
    modules, stop_index = build_modules(grid)
    weeks = build_week_timetables(grid, stop_index, geometry)
    return ParsedTimetable(name=derive_display_name(grid), modules=modules, weeks=weeks)


def lesson_summary(lesson: Lesson, modules: dict[str, Module]) -> str:
    mod = modules.get(lesson.module)
    if mod is None:
        return lesson.module
    return f"[{mod.code}] {mod.name}"


def summarize_timetable(parsed: ParsedTimetable) -> str:
    lines = [f"-- {parsed.name} --", f"Modules: {len(parsed.modules)}"]
    for code, mod in parsed.modules.items():
        lines.append(f"  {code} | {mod.name} | credits={mod.credits} | lead={mod.lead}")
    for i, week in enumerate(parsed.weeks, start=1):
        if week.status is not WeekStatus.VALID:
            lines.append(f"Week {i:02d}: {week.status.value} (no lessons)")
            continue
        lines.append(f"Week {i:02d}: {week.start:%Y-%m-%d} → {week.end:%Y-%m-%d} ({week.lesson_count} lessons)")
        for day_name, day in zip(DAY_NAMES, week.lessons):
            for l in day:
                where = f" @ {l.location}" if l.location else ""
                lines.append(
                    f"  [{day_name}] {l.start:%H:%M}-{l.end:%H:%M} {lesson_summary(l, parsed.modules)}{where} :: {l.description}"
                )
    return "\n".join(lines)


def build_calendar(parsed: ParsedTimetable, uid_domain: str | None = None) -> Calendar:
    cal = Calendar()
    uid_dom = uid_domain or "timetable.local"
    for week in parsed.weeks:
        for day in week.lessons:
            for lesson in day:
                ev = Event()
                ev.name = lesson_summary(lesson, parsed.modules)
                ev.begin = lesson.start
                ev.end = lesson.end
                if lesson.location:
                    ev.location = lesson.location
                ev.description = lesson.description
                ev.uid = f"{uuid.uuid4()}@{uid_dom}"
                cal.events.add(ev)
    return cal


def fix_ics_content(text: str, cal_name: str | None = None, tz: str | None = "GMT+8") -> str:
    """Add calendar headers and a DTSTAMP per event, and normalise to CRLF line endings."""
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    present = {l.split(":", 1)[0] for l in lines if ":" in l}
    headers = []
    if "CALSCALE" not in present:
        headers.append("CALSCALE:GREGORIAN")
    if "METHOD" not in present:
        headers.append("METHOD:REQUEST")
    if cal_name and "X-WR-CALNAME" not in present:
        headers.append(f"X-WR-CALNAME:{cal_name}")
    if tz and "X-WR-TIMEZONE" not in present:
        headers.append(f"X-WR-TIMEZONE:{tz}")

    out: list[str] = []
    anchor = "VERSION" if "VERSION" in present else None
    inserted = False
    for l in lines:
        out.append(l)
        if not inserted and ((anchor and l.startswith("VERSION:")) or (not anchor and l == "BEGIN:VCALENDAR")):
            out.extend(headers)
            inserted = True

    fixed: list[str] = []
    buf: list[str] = []
    in_event = False
    have_dtstamp = False
    utc_now = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    for l in out:
        if l == "BEGIN:VEVENT":
            in_event, buf, have_dtstamp = True, [l], False
            continue
        if not in_event:
            fixed.append(l)
            continue
        if l.startswith("DTSTAMP"):
            have_dtstamp = True
        buf.append(l)
        if l == "END:VEVENT":
            if not have_dtstamp:
                buf.insert(1, f"DTSTAMP:{utc_now}")
            fixed.extend(buf)
            in_event = False
    return "\r\n".join(x for x in fixed if x) + "\r\n"


def to_domain(name: str) -> str:
    s = (name or "").strip().lower()
    s = s.replace("@", "-")
    s = re.sub(r"[^a-z0-9.-]+", "-", s)
    s = re.sub(r"-+", "-", s).strip("-")
    return s or "timetable.local"


def build_ics(parsed: ParsedTimetable, output_path: str) -> int:
    """Write the calendar for ``parsed`` to ``output_path``; returns the number of events."""
    cal = build_calendar(parsed, uid_domain=to_domain(parsed.name))
    content = "".join(cal.serialize_iter())
    content = fix_ics_content(content, cal_name=parsed.name)
    with open(output_path, "wb") as f:
        f.write(content.encode("utf-8"))
    print(f"Calendar exported: {output_path} (events: {len(cal.events)})")
    return len(cal.events)


def find_default_xlsx() -> str | None:
    books = sorted(p for p in glob.glob("*.xlsx") if not os.path.basename(p).startswith("~$"))
    return books[0] if books else None


def default_output_path(xlsx_path: str) -> str:
    xlsx_dir = os.path.dirname(os.path.abspath(xlsx_path))
    stem = os.path.splitext(os.path.basename(xlsx_path))[0]
    return os.path.join(xlsx_dir, f"{stem.replace(' ', '_')}.ics")


def report_degraded_weeks(parsed: ParsedTimetable) -> None:
    for i, week in enumerate(parsed.weeks, start=1):
        if week.status is WeekStatus.MISSING_DATE:
            print(f"Warning: week block {i} has no start date cell; left empty.")
        elif week.status is WeekStatus.UNPARSEABLE_DATE:
            print(f"Warning: week block {i} start date could not be read as a date; left empty.")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Convert an Excel timetable (.xlsx) into an ICS calendar file.")
    parser.add_argument("xlsx", nargs="?", help="timetable workbook (default: first .xlsx in the current folder)")
    parser.add_argument("-o", "--output", help="output .ics path (default: next to the workbook)")
    parser.add_argument(
        "--block-height",
        type=int,
        default=DEFAULT_GEOMETRY.block_height,
        help=f"rows per week block (default: {DEFAULT_GEOMETRY.block_height})",
    )
    args = parser.parse_args(argv)

    xlsx_path = args.xlsx or find_default_xlsx()
    if not xlsx_path or not os.path.exists(xlsx_path):
        print("Excel file not found. Please run again and provide a valid path.")
        return 1

    try:
        geometry = replace(DEFAULT_GEOMETRY, block_height=args.block_height)
    except ValueError as e:
        print(f"Invalid table geometry: {e}")
        return 1

    try:
        grid = load_grid(xlsx_path)
    except TimetableReadError as e:
        print(f"Error processing file: {e}")
        return 1

    parsed = parse_timetable(grid, geometry)
    report_degraded_weeks(parsed)
    if parsed.lesson_count == 0:
        print("No lessons detected; cannot generate calendar.")
        return 1

    print(f"Detected {len(parsed.modules)} modules, {len(parsed.weeks)} weeks, {parsed.lesson_count} lessons; generating calendar…")
    if os.getenv("TT_DEBUG") == "1":
        print(summarize_timetable(parsed))

    build_ics(parsed, args.output or default_output_path(xlsx_path))
    return 0


if __name__ == "__main__":
    sys.exit(main())
