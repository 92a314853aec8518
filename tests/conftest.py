"""Shared pytest fixtures and utilities for ledgerbook tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from ledgerbook import cli, constants, core_logic, data_manager  # noqa: E402
from ledgerbook.models import Item, Party  # noqa: E402
from ledgerbook.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_TENANT = "acme"
EPOCH = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultTenant = {default_tenant}\n\n"
    "[Concurrency]\n"
    "LockTimeout = 0.5\n"
    "SequenceRetries = 3\n"
    "SequenceBackoff = 0\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_tenant: str
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Traders",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_tenant: str = DEFAULT_TENANT,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                default_tenant=default_tenant,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_tenant=default_tenant,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory ledger fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide configuration settings for in-memory runtime contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        business_name="Test Traders",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_tenant=DEFAULT_TENANT,
        lock_timeout=0.5,
        sequence_retries=3,
        sequence_backoff=0.0,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Runtime context over an in-memory store."""

    return core_logic.build_runtime_context(settings)


@pytest.fixture
def tenant() -> str:
    return DEFAULT_TENANT


@pytest.fixture
def moment() -> Callable[..., datetime]:
    """Return aware UTC timestamps offset from a fixed epoch."""

    def _at(days: int = 0, *, minutes: int = 0) -> datetime:
        return EPOCH + timedelta(days=days, minutes=minutes)

    return _at


@pytest.fixture
def party_factory(context: core_logic.RuntimeContext, tenant: str) -> Callable[..., Party]:
    """Register parties in ``context``."""

    def _create(name: str = "Alice", opening_balance: str = "0", *, tenant_id: str | None = None) -> Party:
        return core_logic.register_party(
            context,
            tenant_id or tenant,
            core_logic.RegisterPartyCommand(name=name, opening_balance=opening_balance),
        )

    return _create


@pytest.fixture
def item_factory(context: core_logic.RuntimeContext, tenant: str) -> Callable[..., Item]:
    """Register stock items in ``context``."""

    def _create(
        name: str = "Widget",
        *,
        unit: object = "Piece",
        conversion_factor: object = None,
        opening_quantity: str = "0",
        purchase_price: str = "0",
        sale_price: str = "0",
        tenant_id: str | None = None,
    ) -> Item:
        return core_logic.register_item(
            context,
            tenant_id or tenant,
            core_logic.RegisterItemCommand(
                name=name,
                unit=unit,
                conversion_factor=conversion_factor,
                opening_quantity=opening_quantity,
                purchase_price=purchase_price,
                sale_price=sale_price,
            ),
        )

    return _create


@pytest.fixture
def widget(item_factory: Callable[..., Item]) -> Item:
    """Piece/Dozen item with an opening batch of 100 pieces at 10."""

    return item_factory(
        "Widget",
        unit={"base": "Piece", "secondary": "Dozen", "conversionFactor": "12"},
        opening_quantity="100",
        purchase_price="10",
        sale_price="15",
    )


@pytest.fixture
def customer(party_factory: Callable[..., Party]) -> Party:
    return party_factory("Alice")


@pytest.fixture
def supplier(party_factory: Callable[..., Party]) -> Party:
    return party_factory("Bolt Supplies")


@pytest.fixture
def line() -> Callable[..., core_logic.LineItemInput]:
    """Shorthand for building line item inputs."""

    def _line(item_id: str, quantity: str, price: str, unit: str | None = None, **extra) -> core_logic.LineItemInput:
        return core_logic.LineItemInput(item_id=item_id, quantity=quantity, unit_price=price, unit=unit, **extra)

    return _line


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    return argparse.ArgumentParser(prog="ledgerbook-test", description="ledgerbook CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
