"""Create an empty ledgerbook master workbook.

Installed as the ``ledgerbook-setup`` console script. It reads the same
``config.ini`` as the CLI, so the workbook is created at the configured
``DataFile``.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log
from .constants import SheetName

HEADER_FONT = Font(bold=True)


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Parse ``config_path``; a relative ``DataFile`` is taken relative to the config file."""

    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)


def _write_header(worksheet: Worksheet, columns: Sequence[str]) -> None:
    for column_index, title in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index, value=title)
        cell.font = HEADER_FONT
    worksheet.freeze_panes = "A2"


def build_workbook(sheet_columns: Mapping[SheetName, Sequence[str]] = data_manager.SHEET_HEADERS) -> Workbook:
    """Return an in-memory workbook with one header-only sheet per entry."""

    workbook = openpyxl.Workbook()
    placeholder = workbook.active
    for sheet, columns in sheet_columns.items():
        _write_header(workbook.create_sheet(title=SheetName(sheet).value), columns)
    if placeholder is not None:
        workbook.remove(placeholder)
    return workbook


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[SheetName, Sequence[str]] = data_manager.SHEET_HEADERS,
    overwrite: bool = False,
) -> Path:
    """Write an empty ledger workbook to ``destination`` and return its resolved path.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    target = destination.expanduser().resolve()
    if target.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {target}")

    workbook = build_workbook(sheet_columns)
    target.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(target)
    log.info("Created master workbook '%s' (%d sheets)", target, len(workbook.sheetnames))
    return target


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    return create_master_workbook(load_settings(config_path).data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ledgerbook-setup", description="Create the ledgerbook master workbook.")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(data_manager.CONFIG_FILE_NAME),
        help="Configuration file naming the workbook (default: ./config.ini).",
    )
    parser.add_argument("--force", action="store_true", help="Replace an existing workbook.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Create the workbook named by the config file; return a process exit code."""

    args = parse_args(argv)
    config_path = args.config.expanduser().resolve()
    print(f"ledgerbook setup: reading {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}\nPass --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"[ERROR] Invalid configuration: {exc}")
        return 1
    except OSError as exc:
        log.error("Unable to write workbook: %s", exc)
        print(f"[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"[SUCCESS] Master workbook ready at {output_path}")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
