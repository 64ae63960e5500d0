"""
Shared pytest fixtures for fitarchive tests.

Provides a mock decoder so tests never need real FIT files: a "file" is a
JSON document describing the decoded content.
"""

import json
import time
from dataclasses import fields
from pathlib import Path
from typing import Optional

import pytest

from fitarchive.archive import open_archive
from fitarchive.config import ArchiveConfig, ProviderConfig, save_config
from fitarchive.errors import DecodeError
from fitarchive.ingest import Ingestor
from fitarchive.providers.base import get_registry
from fitarchive.types import (
    Activity,
    ActivityContent,
    MonitoringContent,
    OtherContent,
)


class MockDecoder:
    """
    Deterministic decoder for testing.

    Bytes must be a JSON object; "kind" selects activity (default),
    monitoring, or any other file type. Unknown keys are ignored, so a
    "salt" key can make otherwise identical contents differ.
    """

    def __init__(self):
        self.calls: list[str] = []

    def decode(self, data: bytes, name: str = ""):
        self.calls.append(Path(name).name if name else "")
        try:
            doc = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"{name or 'data'}: not a valid file") from e
        if not isinstance(doc, dict):
            raise DecodeError(f"{name or 'data'}: not a valid file")
        kind = doc.get("kind", "activity")
        if kind == "activity":
            known = {f.name for f in fields(ActivityContent)}
            return ActivityContent(**{k: v for k, v in doc.items() if k in known})
        if kind == "monitoring":
            known = {f.name for f in fields(MonitoringContent)}
            return MonitoringContent(**{k: v for k, v in doc.items() if k in known})
        return OtherContent(file_type=kind)


class RecordingRenderer:
    """Renderer that records the signals it receives."""

    def __init__(self):
        self.signals: list[tuple[str, Optional[str]]] = []

    def regenerate(self, activity) -> None:
        self.signals.append(("regenerate", activity.id))

    def discard(self, activity) -> None:
        self.signals.append(("discard", activity.id))

    def regenerate_index(self, activities) -> None:
        self.signals.append(("regenerate_index", None))

    def regenerate_all(self, activities) -> None:
        self.signals.append(("regenerate_all", None))


# Config files can name the mock decoder, so the CLI path is testable too
get_registry().register_decoder("mock", MockDecoder)


def activity_bytes(
    timestamp: str,
    sport: str = "running",
    distance: float = 5000.0,
    duration: float = 1800.0,
    best_times: Optional[dict] = None,
    sub_sport: str = "generic",
    salt: str = "",
) -> bytes:
    """Bytes of a mock activity file."""
    doc = {
        "kind": "activity",
        "timestamp": timestamp,
        "sport": sport,
        "sub_sport": sub_sport,
        "total_distance": distance,
        "total_timer_time": duration,
        "best_times": best_times or {},
    }
    if salt:
        doc["salt"] = salt
    return json.dumps(doc, sort_keys=True).encode()


def monitoring_bytes(day: str, steps: int = 8000, salt: str = "") -> bytes:
    """Bytes of a mock monitoring file."""
    doc = {"kind": "monitoring", "date": day, "steps": steps, "active_calories": 300}
    if salt:
        doc["salt"] = salt
    return json.dumps(doc, sort_keys=True).encode()


def make_activity(
    activity_id: str,
    timestamp: str,
    activity_type: str = "running",
    distance: float = 0.0,
    duration: float = 0.0,
    best_times: Optional[dict] = None,
    norecord: bool = False,
) -> Activity:
    """An Activity built directly, without ingesting a file."""
    return Activity(
        id=activity_id,
        fingerprint=activity_id,
        name=activity_id,
        timestamp=timestamp,
        type=activity_type,
        subtype="generic",
        content_path="",
        distance=distance,
        duration=duration,
        best_times=best_times or {},
        norecord=norecord,
    )


@pytest.fixture(autouse=True)
def utc_local_time(monkeypatch):
    """Pin local time to UTC so activity dates don't depend on the host."""
    monkeypatch.setenv("TZ", "UTC")
    if hasattr(time, "tzset"):
        time.tzset()


@pytest.fixture
def mock_decoder():
    """Create a fresh MockDecoder instance."""
    return MockDecoder()


@pytest.fixture
def renderer():
    return RecordingRenderer()


@pytest.fixture
def config(tmp_path) -> ArchiveConfig:
    """A saved archive configuration using the mock decoder."""
    cfg = ArchiveConfig(path=tmp_path / "archive", decoder=ProviderConfig("mock"))
    save_config(cfg)
    return cfg


@pytest.fixture
def archive(config, mock_decoder, renderer):
    """An open, empty archive."""
    arch = open_archive(config, decoder=mock_decoder, renderer=renderer)
    yield arch
    arch.close()


@pytest.fixture
def ingestor(archive):
    return Ingestor(archive)


@pytest.fixture
def write_file(tmp_path):
    """Factory writing bytes to a file under tmp_path/incoming."""
    incoming = tmp_path / "incoming"
    incoming.mkdir(exist_ok=True)

    def _write(name: str, data: bytes) -> Path:
        path = incoming / name
        path.write_bytes(data)
        return path

    return _write
