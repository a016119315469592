"""Runtime configuration: INI file, then ``IAUPLOAD_*`` environment overrides."""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

from .errors import ConfigurationError
from .utils import MAX_PAGE_DIMENSION, POLL_INTERVAL_S, RETENTION_DAYS, STALE_AFTER_HOURS

log = logging.getLogger(__name__)

CONFIG_SECTION = "iaupload"

# Keys as spelled in the web front end's config.ini.
_LEGACY_KEYS = {
    "consumerKey": "consumer_key",
    "consumerSecret": "consumer_secret",
}


@dataclass
class Config:
    queue_dir: Path = Path("jobqueue")
    wiki_base_url: str = "https://commons.wikimedia.org"
    archive_base_url: str = "https://archive.org"
    conversion_service_url: str = "https://phetools.toolforge.org/pdf_to_djvu_cgi.py"
    consumer_key: str = ""
    consumer_secret: str = ""
    retention_days: int = RETENTION_DAYS
    stale_after_hours: int = STALE_AFTER_HOURS
    poll_interval_s: float = POLL_INTERVAL_S
    max_page_dimension: int = MAX_PAGE_DIMENSION


def _coerce(name: str, raw: str) -> object:
    default = getattr(Config, name)
    if isinstance(default, Path):
        return Path(raw)
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"Invalid value {raw!r} for {name}: expected {type(default).__name__}"
        ) from None
    return raw


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Build a :class:`Config` from *path* (optional) and the environment."""
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(Config)}
    values: dict[str, object] = {}

    if path is not None and path.exists():
        parser = configparser.ConfigParser()
        parser.optionxform = str  # keep camelCase keys intact
        parser.read(path, encoding="utf-8")
        if parser.has_section(CONFIG_SECTION):
            for key, raw in parser.items(CONFIG_SECTION):
                name = _LEGACY_KEYS.get(key, key)
                if name in known:
                    values[name] = _coerce(name, raw)
                else:
                    log.warning("Ignoring unknown config key %s in %s", key, path)
        log.debug("Loaded %s config value(s) from %s", len(values), path)
    elif path is not None:
        log.debug("Config file %s not found; using defaults", path)

    for name in known:
        env_key = f"IAUPLOAD_{name.upper()}"
        if env_key in environ:
            values[name] = _coerce(name, environ[env_key])

    return Config(**values)  # type: ignore[arg-type]
