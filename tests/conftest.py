from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable

import pytest
from prometheus_client import CollectorRegistry

from owntracks_recorder_exporter import ExporterMetrics, ProgramLogger, StorageAccountant


@pytest.fixture
def logger():
    return ProgramLogger.get_logger("owntracks_recorder_exporter.tests")


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def storage(tmp_path: Path) -> Path:
    root = tmp_path / "otr-storage"
    (root / "last").mkdir(parents=True)
    (root / "rec").mkdir()
    return root


@pytest.fixture
def accountant(storage: Path, registry: CollectorRegistry, logger) -> StorageAccountant:
    return StorageAccountant(storage, ExporterMetrics(registry), logger)


def add_device(root: Path, user: str, device: str, files: Dict[str, Iterable[str]] | None = None) -> Path:
    """Register a device under last/ and write its record files under rec/."""
    (root / "last" / user / device).mkdir(parents=True, exist_ok=True)
    rec_dir = root / "rec" / user / device
    rec_dir.mkdir(parents=True, exist_ok=True)
    for name, lines in (files or {}).items():
        (rec_dir / name).write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    return rec_dir


def point(ts: str = "2024-01-01T00:00:00Z") -> str:
    return f'{ts}\t*                 \t{{"_type":"location","lat":52.5,"lon":13.4,"tst":1704067200}}'


def lwt(ts: str = "2024-01-01T00:00:00Z") -> str:
    return f'{ts}\tlwt               \t{{"_type":"lwt","tst":1704067200}}'


def sample(registry: CollectorRegistry, name: str, user: str, device: str):
    return registry.get_sample_value(name, {"user": user, "device": device})
