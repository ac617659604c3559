from timetable_to_calendar_xlsx import Cell, Cursor, Grid, Module, ScanState, build_modules, read_module_row, seek_module_header

from conftest import BLUE, RED


def test_modules_under_code_header(sheet):
    sheet.row("AY2024")
    sheet.row("Semester 1")
    stop = sheet.modules(("CS101", "Intro", "4", "Dr X"), ("MA102", "Calculus", "3", "Dr Y"))

    modules, stop_index = build_modules(sheet.grid())

    assert stop_index == stop
    assert list(modules) == ["CS101", "MA102"]
    assert modules["CS101"] == Module(code="CS101", name="Intro", credits="4", lead="Dr X", fill="")
    assert modules["MA102"].lead == "Dr Y"


def test_module_fill_comes_from_first_cell(sheet):
    sheet.modules(("CS101", "Intro", "4", "Dr X"), fill=BLUE)
    modules, _ = build_modules(sheet.grid())
    assert modules["CS101"].fill == BLUE


def test_duplicate_code_keeps_later_row(sheet):
    sheet.modules(("CS101", "Intro", "4", "Dr X"), ("CS101", "Intro II", "2", "Dr Z"))
    modules, _ = build_modules(sheet.grid())
    assert len(modules) == 1
    assert modules["CS101"] == Module(code="CS101", name="Intro II", credits="2", lead="Dr Z")


def test_short_module_row_reads_missing_cells_as_empty():
    grid = Grid(((Cell("CODE"),), (Cell("CS101"), Cell("Intro")), ()))
    modules, stop = build_modules(grid)
    assert modules["CS101"] == Module(code="CS101", name="Intro")
    assert stop == 2


def test_blank_first_cell_ends_table():
    grid = Grid((
        (Cell("CODE"),),
        (Cell("CS101"),),
        (Cell(""), Cell("orphan")),
        (Cell("MA102"),),
    ))
    modules, stop = build_modules(grid)
    assert list(modules) == ["CS101"]
    assert stop == 2


def test_table_running_to_end_of_grid():
    grid = Grid(((Cell("CODE"),), (Cell("CS101"),)))
    modules, stop = build_modules(grid)
    assert list(modules) == ["CS101"]
    assert stop == 2


def test_missing_header_degrades_without_error():
    grid = Grid(((Cell("Some title"),), ()))
    modules, stop = build_modules(grid)
    # the body is read from row 0
    assert list(modules) == ["Some title"]
    assert stop == 1


def test_empty_grid():
    assert build_modules(Grid()) == ({}, 0)


def test_module_header_transitions():
    grid = Grid(((Cell("title"),), (Cell("CODE"),), (Cell("CS101", fill=RED),)))
    assert seek_module_header(grid, Cursor(ScanState.SEEK_MODULE_HEADER, 0)) == Cursor(ScanState.SEEK_MODULE_HEADER, 1)
    assert seek_module_header(grid, Cursor(ScanState.SEEK_MODULE_HEADER, 1)) == Cursor(ScanState.READ_MODULE_ROWS, 2)
    assert seek_module_header(grid, Cursor(ScanState.SEEK_MODULE_HEADER, 3)) == Cursor(ScanState.READ_MODULE_ROWS, 0)

    cursor, module = read_module_row(grid, Cursor(ScanState.READ_MODULE_ROWS, 2))
    assert cursor == Cursor(ScanState.READ_MODULE_ROWS, 3)
    assert module == Module(code="CS101", fill=RED)

    cursor, module = read_module_row(grid, cursor)
    assert cursor == Cursor(ScanState.SEEK_WEEK_HEADER, 3)
    assert module is None
