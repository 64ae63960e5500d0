"""
Configuration management for activity archives.

The configuration is stored as a TOML file in the archive directory. It is
loaded once per process and handed to every component that needs it;
components never read it from global state.
"""

import os
import tomllib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "fitarchive.toml"
CONFIG_VERSION = 1

UNIT_SYSTEMS = ("metric", "statute")
REIMPORT_POLICIES = ("replace", "append")


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ArchiveConfig:
    """Complete archive configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    unit_system: str = "metric"
    # First day of the week. 0 means Sunday, 1 Monday and so on.
    week_start_day: int = 1
    html_dir: Optional[Path] = None
    # Directory of the most recent directory import
    import_dir: Optional[Path] = None
    reimport_policy: str = "replace"

    decoder: ProviderConfig = field(default_factory=lambda: ProviderConfig("fitparse"))

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_dir(self) -> Path:
        """Directory holding the object store engine files."""
        return self.path / "database"

    @property
    def fit_dir(self) -> Path:
        """Directory holding copies of imported source files."""
        return self.path / "fit"

    @property
    def report_dir(self) -> Path:
        """Output directory for generated reports."""
        return self.html_dir if self.html_dir is not None else self.path / "html"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_archive_dir(override: Optional[Path] = None) -> Path:
    """
    Resolve the archive directory.

    Priority:
    1. Explicit override (command line option)
    2. FITARCHIVE_DIR environment variable
    3. ~/.fitarchive
    """
    if override is not None:
        return Path(override).expanduser().resolve()
    env_dir = os.environ.get("FITARCHIVE_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path.home() / ".fitarchive"


def _validate(config: ArchiveConfig) -> None:
    if config.unit_system not in UNIT_SYSTEMS:
        raise ValueError(
            f"Invalid unit system {config.unit_system!r} (use 'metric' or 'statute')"
        )
    if not 0 <= config.week_start_day <= 6:
        raise ValueError(f"week_start_day must be 0-6, got {config.week_start_day}")
    if config.reimport_policy not in REIMPORT_POLICIES:
        raise ValueError(
            f"Invalid reimport_policy {config.reimport_policy!r} "
            f"(use one of: {', '.join(REIMPORT_POLICIES)})"
        )


def load_config(archive_dir: Path) -> ArchiveConfig:
    """
    Load configuration from an archive directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = archive_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = data.get("archive", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    decoder_section = data.get("decoder", {"name": "fitparse"})
    html_dir = store.get("html_dir")
    import_dir = store.get("import_dir")

    config = ArchiveConfig(
        path=archive_dir,
        version=version,
        created=store.get("created", ""),
        unit_system=store.get("unit_system", "metric"),
        week_start_day=int(store.get("week_start_day", 1)),
        html_dir=Path(html_dir) if html_dir else None,
        import_dir=Path(import_dir) if import_dir else None,
        reimport_policy=store.get("reimport_policy", "replace"),
        decoder=ProviderConfig(
            name=decoder_section.get("name", "fitparse"),
            params={k: v for k, v in decoder_section.items() if k != "name"},
        ),
    )
    _validate(config)
    return config


def save_config(config: ArchiveConfig) -> None:
    """
    Save configuration to the archive directory.

    Creates the directory if it doesn't exist.
    """
    _validate(config)
    config.path.mkdir(parents=True, exist_ok=True)

    store: dict[str, Any] = {
        "version": config.version,
        "created": config.created,
        "unit_system": config.unit_system,
        "week_start_day": config.week_start_day,
        "reimport_policy": config.reimport_policy,
    }
    # TOML has no null; unset paths are simply omitted
    if config.html_dir is not None:
        store["html_dir"] = str(config.html_dir)
    if config.import_dir is not None:
        store["import_dir"] = str(config.import_dir)

    decoder = {"name": config.decoder.name}
    decoder.update(config.decoder.params)

    data = {"archive": store, "decoder": decoder}

    tmp_path = config.config_path.with_suffix(".toml.tmp")
    with open(tmp_path, "wb") as f:
        tomli_w.dump(data, f)
    os.replace(tmp_path, config.config_path)


def update_config(config: ArchiveConfig, **changes: Any) -> ArchiveConfig:
    """Persist a modified copy of the configuration and return it."""
    updated = replace(config, **changes)
    save_config(updated)
    return updated


def load_or_create_config(archive_dir: Path) -> ArchiveConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = archive_dir / CONFIG_FILENAME

    if config_path.exists():
        return load_config(archive_dir)
    config = ArchiveConfig(path=archive_dir)
    save_config(config)
    return config
