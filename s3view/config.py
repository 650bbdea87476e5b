from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 3600
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def config_base_dir() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        base = Path(config_home).expanduser()
    else:
        base = Path.home() / ".config"
    return base / "s3view"


def default_downloads_dir() -> Path:
    return Path.home() / "Downloads"


@dataclass(frozen=True)
class AppConfig:
    profile: Optional[str] = None
    region: Optional[str] = None
    downloads_dir: Optional[str] = None
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS

    @property
    def downloads_path(self) -> Path:
        if self.downloads_dir:
            return Path(self.downloads_dir).expanduser()
        return default_downloads_dir()

    def with_overrides(self, **overrides: object) -> AppConfig:
        values = {name: value for name, value in overrides.items() if value is not None}
        if not values:
            return self
        return replace(self, **values)


class ConfigStore:
    """JSON-backed persistence for :class:`AppConfig`.

    Unknown keys are preserved on save so that hand edits survive. Values
    of the wrong type fall back to the defaults instead of failing startup.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or config_base_dir() / "config.json"

    def _read(self) -> dict[str, object]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Ignoring unreadable config file %s", self.path)
            return {}
        if not isinstance(payload, dict):
            return {}
        return payload

    def load(self) -> AppConfig:
        payload = self._read()
        ttl = payload.get("cache_ttl_seconds", DEFAULT_CACHE_TTL_SECONDS)
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl < 0:
            ttl = DEFAULT_CACHE_TTL_SECONDS
        return AppConfig(
            profile=_decode_text(payload.get("profile")),
            region=_decode_text(payload.get("region")),
            downloads_dir=_decode_text(payload.get("downloads_dir")),
            cache_ttl_seconds=ttl,
        )

    def save(self, config: AppConfig) -> bool:
        payload = self._read()
        payload.update(asdict(config))
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix(".tmp")
            temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            temp_path.replace(self.path)
        except OSError:
            LOGGER.exception("Could not write config file %s", self.path)
            return False
        return True


def _decode_text(value: object) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def load_config(
    store: Optional[ConfigStore] = None,
    environ: Optional[dict[str, str]] = None,
) -> AppConfig:
    """Return the stored config with ``AWS_PROFILE`` applied.

    The config file wins over the environment, CLI flags are applied on top
    by the caller with :meth:`AppConfig.with_overrides`. ``AWS_REGION`` is
    left to :class:`~s3view.s3.S3Service`, which only falls back to it when
    the profile has no region of its own.
    """
    environ = os.environ if environ is None else environ
    config = (store or ConfigStore()).load()
    if config.profile is None:
        config = config.with_overrides(profile=_decode_text(environ.get("AWS_PROFILE")))
    return config


def setup_logging(
    debug: bool = False, log_file: Optional[Path] = None
) -> logging.Logger:
    root_logger = logging.getLogger()
    root_logger.handlers = []
    if not debug and log_file is None:
        root_logger.addHandler(logging.NullHandler())
        return root_logger

    path = log_file or config_base_dir() / "s3view.log"
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    root_logger.addHandler(handler)
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.INFO)
    logging.getLogger("urllib3").setLevel(logging.INFO)
    return root_logger
