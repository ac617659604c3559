import os
import sys
from datetime import datetime, timedelta

import pytest
from openpyxl import Workbook
from openpyxl.styles import PatternFill

# Add project root to sys.path so the module is importable without installing
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from timetable_to_calendar_xlsx import Cell, Grid  # noqa: E402

RED = "FFFF0000"
BLUE = "FF0000FF"
GREEN = "FF00FF00"


class SheetBuilder:
    """Builds timetable sheets following the module-table + week-block convention."""

    def __init__(self, block_height: int = 21):
        self.block_height = block_height
        self.rows: list[list[Cell]] = []

    def row(self, *values) -> int:
        self.rows.append([Cell(value=str(v), raw=v) for v in values])
        return len(self.rows) - 1

    def blank(self) -> int:
        self.rows.append([])
        return len(self.rows) - 1

    def modules(self, *modules: tuple[str, str, str, str], fill: str = "") -> int:
        """Append the CODE header, one row per module and the blank terminator row."""
        self.row("CODE", "MODULE", "CREDITS", "LEAD")
        for code, name, credits, lead in modules:
            idx = self.row(code, name, credits, lead)
            if fill:
                self.set(idx, 0, fill=fill)
        return self.blank()

    def week(self, label: str | None, monday: datetime | None, height: int | None = None) -> int:
        """Append a label row and a week block; returns the anchor ("Time") row."""
        height = height or self.block_height
        if label is not None:
            self.row(label)
        anchor = len(self.rows)
        header = [Cell("Time", raw="Time")]
        if monday is not None:
            for d in range(5):
                day = monday + timedelta(days=d)
                header += [Cell(day.isoformat(), raw=day), Cell()]
            header.pop()
        self.rows.append(header)
        self.rows.append([Cell()] + [c for name in ("Mon", "Tue", "Wed", "Thu", "Fri") for c in (Cell(name, raw=name), Cell())])
        for slot in range(height - 2):
            t = datetime(2000, 1, 1, 8, 30) + timedelta(minutes=30 * slot)
            self.row(t.strftime("%H%M"))
        return anchor

    def set(self, row: int, column: int, value=None, fill: str | None = None) -> None:
        while len(self.rows) <= row:
            self.rows.append([])
        cells = self.rows[row]
        while len(cells) <= column:
            cells.append(Cell())
        old = cells[column]
        cells[column] = Cell(
            value=old.value if value is None else str(value),
            fill=old.fill if fill is None else fill,
            raw=old.raw if value is None else value,
        )

    def lesson(self, anchor: int, day: int, slot: int, code: str, description: str = "",
               location: str = "", fill: str = RED, length: int = 1) -> None:
        column = 1 + 2 * day
        first = anchor + 2 + slot
        for k in range(length):
            self.set(first + k, column, fill=fill)
        self.set(first, column, value=code)
        if description:
            self.set(first + 1, column, value=description)
        if location:
            self.set(first + 1, column + 1, value=location)

    def grid(self) -> Grid:
        return Grid(tuple(tuple(r) for r in self.rows))

    def save(self, path) -> str:
        wb = Workbook()
        ws = wb.active
        for r, cells in enumerate(self.rows, start=1):
            for c, cell in enumerate(cells, start=1):
                if cell.raw is not None and cell.raw != "":
                    ws.cell(row=r, column=c, value=cell.raw)
                if cell.fill:
                    ws.cell(row=r, column=c).fill = PatternFill(fill_type="solid", fgColor=cell.fill)
        wb.save(path)
        return str(path)


@pytest.fixture
def sheet() -> SheetBuilder:
    return SheetBuilder()


@pytest.fixture
def monday() -> datetime:
    return datetime(2024, 1, 8)
