"""Shared fixtures: DAQS files on disk, a configured logger and state."""

import os
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml

from tigo_daqs_exporter import (
    FIXED_PREFIX_WIDTH,
    MODULE_STRIDE,
    TIMESTAMP_COLUMN,
    DaqsCollector,
    MetricsState,
    ModuleColumn,
    ProgramConfig,
    ProgramLogger,
    ProgramSource,
)


def daqs_header(module_count: int, extra_columns: int = 0) -> List[str]:
    header = ["DateTime", "Unix Time", "SysConfig"]
    for i in range(module_count):
        header.extend(f"LMU_A{i + 1}_{column.name}" for column in ModuleColumn)
    header.extend(f"Extra{n}" for n in range(extra_columns))
    return header


def daqs_row(
    timestamp: str,
    modules: List[Dict[ModuleColumn, str]],
    extra_columns: int = 0
) -> List[str]:
    """Build a data row; module columns not given are left empty."""
    row = [""] * (FIXED_PREFIX_WIDTH + MODULE_STRIDE * len(modules) + extra_columns)
    row[0] = "2023/11/14 22:13:20"
    row[TIMESTAMP_COLUMN] = timestamp
    for i, values in enumerate(modules):
        for column, text in values.items():
            row[FIXED_PREFIX_WIDTH + i * MODULE_STRIDE + column] = text
    return row


def render(rows: List[List[str]]) -> str:
    return "".join(",".join(row) + "\n" for row in rows)


def write_daqs_file(
    path: Path,
    rows: List[List[str]],
    module_count: int,
    extra_columns: int = 0,
    mtime: Optional[float] = None
) -> Path:
    path.write_text(render([daqs_header(module_count, extra_columns)] + rows))
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture(autouse=True)
def outside_systemd(monkeypatch):
    monkeypatch.delenv("INVOCATION_ID", raising=False)


@pytest.fixture
def data_dir(tmp_path) -> Path:
    path = tmp_path / "daqs"
    path.mkdir()
    return path


@pytest.fixture
def source(tmp_path) -> ProgramSource:
    return ProgramSource(script_path=tmp_path / "tigo_daqs_exporter.py")


@pytest.fixture
def write_config(source):
    def _write(exporter: dict) -> Path:
        source.config_path.write_text(yaml.safe_dump({"exporter": exporter}))
        return source.config_path
    return _write


@pytest.fixture
def config(source, write_config, data_dir) -> ProgramConfig:
    write_config({
        "data_dir": str(data_dir),
        "bind_address": "127.0.0.1",
        "collection": {"poll_interval_sec": 0.05}
    })
    config = ProgramConfig(source)
    config.load()
    return config


@pytest.fixture
def logger(source, config):
    program_logger = ProgramLogger(source, config)
    yield program_logger.logger
    program_logger.close()


@pytest.fixture
def state() -> MetricsState:
    return MetricsState()


@pytest.fixture
def collector(config, state, logger) -> DaqsCollector:
    return DaqsCollector(config, state, logger)
