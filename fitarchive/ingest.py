"""
Deduplicating import of device files.

The fingerprint of the raw bytes is computed and looked up before the
decoder runs, so a known file costs one hash and one index lookup. Only
new (or forced) content is decoded, classified and handed to the archive,
which commits the entity and its fingerprint entry together.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

from .archive import Archive
from .errors import AlreadyImported, DecodeError, FitArchiveError, UnrecognizedContent
from .providers.base import Decoder
from .types import (
    Activity,
    ActivityContent,
    MonitoringContent,
    MonitoringEntry,
    coerce_attribute,
    utc_now,
)

logger = logging.getLogger(__name__)

FIT_SUFFIX = ".fit"


def fingerprint(data: bytes) -> str:
    """Content fingerprint: SHA-256 hex digest of the raw bytes."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class ImportResult:
    """Outcome of a batch import."""
    imported: list[Union[Activity, MonitoringEntry]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)    # already imported
    failed: list[str] = field(default_factory=list)     # decode/read errors, unrecognized

    @property
    def ok(self) -> bool:
        return not self.failed


def expand_paths(paths: Iterable[Path]) -> list[Path]:
    """Replace directories with the FIT files they contain, in name order."""
    files: list[Path] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            files.extend(sorted(
                p for p in path.iterdir()
                if p.is_file() and p.suffix.lower() == FIT_SUFFIX
            ))
        else:
            files.append(path)
    return files


class Ingestor:
    """
    Turns raw file bytes into archive entries.

    Example:
        ingestor = Ingestor(archive)
        activity = ingestor.ingest_file(Path("2024-05-01-07-12-00.fit"))
    """

    def __init__(self, archive: Archive, decoder: Optional[Decoder] = None):
        self._archive = archive
        self._decoder = decoder if decoder is not None else archive.decoder
        if self._decoder is None:
            raise ValueError("Ingestor needs a decoder")

    def ingest(
        self,
        data: bytes,
        *,
        source: str = "",
        force: bool = False,
        name: Optional[str] = None,
        attributes: Optional[dict] = None,
    ) -> Union[Activity, MonitoringEntry]:
        """
        Import one file's bytes.

        Args:
            data: Raw file content
            source: Original file name, used as default activity name
            force: Import even if the fingerprint is already known
            name: Activity name (default: source file name)
            attributes: Extra attribute values to store with a new activity

        Raises:
            AlreadyImported: Known fingerprint and force not set
            DecodeError: The decoder rejected the bytes
            UnrecognizedContent: Neither activity nor monitoring data
        """
        fp = fingerprint(data)
        status = self._archive.fingerprint_status(fp)
        if status is not None and not force:
            logger.debug("%s: fingerprint %s already %s", source, fp[:12], status.get("status"))
            raise AlreadyImported(fp, source)

        content = self._decoder.decode(data, source)
        source_name = Path(source).name if source else ""

        if isinstance(content, ActivityContent):
            activity = Activity(
                id=fp,
                fingerprint=fp,
                name=coerce_attribute("name", name) if name else (source_name or fp[:12]),
                timestamp=content.timestamp,
                type=content.sport,
                subtype=content.sub_sport,
                content_path="",
                source_file=source_name,
                distance=content.total_distance,
                duration=content.total_timer_time,
                best_times=dict(content.best_times),
                imported_at=utc_now(),
            )
            for key, value in (attributes or {}).items():
                setattr(activity, key, coerce_attribute(key, value))
            return self._archive.add(activity, data, force=force)

        if isinstance(content, MonitoringContent):
            entry = MonitoringEntry(
                id=fp,
                date=content.date,
                content_path="",
                source_file=source_name,
                steps=content.steps,
                active_calories=content.active_calories,
                resting_heart_rate=content.resting_heart_rate,
                imported_at=utc_now(),
            )
            return self._archive.add(entry, data, force=force)

        raise UnrecognizedContent(source or fp, getattr(content, "file_type", ""))

    def ingest_file(
        self,
        path: Path,
        *,
        force: bool = False,
        name: Optional[str] = None,
        attributes: Optional[dict] = None,
    ) -> Union[Activity, MonitoringEntry]:
        """Import one file from disk. Unreadable files raise DecodeError."""
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise DecodeError(f"Cannot read {path}: {e.strerror}") from e
        return self.ingest(data, source=str(path), force=force, name=name, attributes=attributes)

    def ingest_paths(
        self,
        paths: Iterable[Path],
        *,
        force: bool = False,
        name: Optional[str] = None,
    ) -> ImportResult:
        """
        Import files and directories.

        Per-file problems are logged and collected; they never stop the batch.
        """
        result = ImportResult()
        for path in expand_paths(paths):
            try:
                entity = self.ingest_file(path, force=force, name=name)
            except AlreadyImported as e:
                logger.warning("%s", e)
                result.skipped.append(str(path))
            except (DecodeError, UnrecognizedContent) as e:
                logger.warning("Skipping %s", e)
                result.failed.append(str(path))
            except FitArchiveError as e:
                logger.error("Import of %s failed: %s", path, e)
                result.failed.append(str(path))
            else:
                result.imported.append(entity)
        logger.info(
            "Import finished: %d imported, %d already known, %d failed",
            len(result.imported), len(result.skipped), len(result.failed),
        )
        return result
