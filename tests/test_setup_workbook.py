"""Tests for the master workbook setup script."""

from __future__ import annotations

import openpyxl
import pytest

from ledgerbook import data_manager, setup_workbook
from ledgerbook.constants import SheetName


def test_create_master_workbook_writes_bold_headers(tmp_path):
    """Every sheet exists with its header row in bold and no data."""

    path = setup_workbook.create_master_workbook(tmp_path / "nested" / "ledger.xlsx")
    workbook = openpyxl.load_workbook(path)

    assert workbook.sheetnames == [sheet.value for sheet in data_manager.SHEET_HEADERS]
    for sheet, columns in data_manager.SHEET_HEADERS.items():
        worksheet = workbook[SheetName(sheet).value]
        header = [cell.value for cell in worksheet[1]]
        assert header == list(columns)
        assert all(cell.font.bold for cell in worksheet[1])
        assert worksheet.max_row == 1


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    path = setup_workbook.create_master_workbook(tmp_path / "ledger.xlsx")
    with pytest.raises(FileExistsError):
        setup_workbook.create_master_workbook(path)
    assert setup_workbook.create_master_workbook(path, overwrite=True) == path


def test_main_creates_workbook_from_config(config_factory, capsys):
    """The script reads DataFile from config.ini and honours --force."""

    bundle = config_factory(make_relative=True)
    bundle.workbook_path.unlink()

    assert setup_workbook.main(["--config", str(bundle.config_path)]) == 0
    assert bundle.workbook_path.exists()
    assert "[SUCCESS]" in capsys.readouterr().out

    assert setup_workbook.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out

    assert setup_workbook.main(["--config", str(bundle.config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_workbook.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
