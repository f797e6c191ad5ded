"""
Layered configuration for the M00n reporter.

Every option is resolved from, in priority order:
1. Explicit overrides (pytest command-line options or a mapping)
2. Environment variables (M00N_SERVER_URL, ...)
3. File properties (pytest ini keys, then m00n.properties)
4. Documented defaults
"""

import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("m00n_reporter")

PROPERTIES_FILE = "m00n.properties"
ENV_PREFIX = "M00N_"
FILE_PREFIX = "m00n."
ATTRIBUTE_PREFIX = "attribute."

DEFAULT_LAUNCH = "Pytest Tests"
DEFAULT_PROJECT = "python"
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3

OPTION_NAMES = (
    "enabled",
    "server_url",
    "api_key",
    "launch",
    "tags",
    "debug",
    "timeout",
    "max_retries",
    "project",
)


class ReporterConfig(BaseModel):
    """Immutable reporter settings."""

    model_config = ConfigDict(frozen=True)

    enabled_flag: bool = True
    server_url: Optional[str] = None
    api_key: Optional[str] = None
    launch: str = DEFAULT_LAUNCH
    tags: Tuple[str, ...] = ()
    debug: bool = False
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    project: str = DEFAULT_PROJECT
    attributes: Dict[str, str] = Field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        """True only when switched on and both server URL and API key are set."""
        return bool(self.enabled_flag and self.server_url and self.api_key)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def base_url(self) -> str:
        return (self.server_url or "").rstrip("/")

    def has_valid_url(self) -> bool:
        """Check that the server URL is an absolute http(s) URL."""
        parsed = urlparse(self.server_url or "")
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)

    @classmethod
    def load(
        cls,
        overrides: Optional[Mapping[str, Optional[str]]] = None,
        environ: Optional[Mapping[str, str]] = None,
        file_values: Optional[Mapping[str, str]] = None,
        properties_path: Optional[Path] = None,
    ) -> "ReporterConfig":
        """
        Resolve the configuration from all sources.

        Args:
            overrides: Highest priority values keyed by option name
                (``server_url``, ``attribute.team``, ...).
            environ: Environment mapping. Defaults to ``os.environ``.
            file_values: File-based values keyed by option name. When given,
                they are layered over the properties file.
            properties_path: Properties file to read. Defaults to
                ``m00n.properties`` in the working directory.

        Returns:
            A frozen ReporterConfig. Missing values never raise.
        """
        overrides = {k: v for k, v in (overrides or {}).items() if v not in (None, "")}
        env = _from_environ(os.environ if environ is None else environ)
        files = read_properties(properties_path or Path(PROPERTIES_FILE))
        files.update({k: v for k, v in (file_values or {}).items() if v not in (None, "")})

        def resolve(name: str, default: Optional[str] = None) -> Optional[str]:
            for source in (overrides, env, files):
                value = source.get(name)
                if value is not None and value != "":
                    return str(value)
            return default

        attributes: Dict[str, str] = {}
        for source in (files, env, overrides):
            for key, value in source.items():
                if key.startswith(ATTRIBUTE_PREFIX) and len(key) > len(ATTRIBUTE_PREFIX):
                    attributes[key[len(ATTRIBUTE_PREFIX):]] = str(value)

        config = cls(
            enabled_flag=(resolve("enabled", "true") or "").lower() != "false",
            server_url=resolve("server_url"),
            api_key=resolve("api_key"),
            launch=resolve("launch", DEFAULT_LAUNCH),
            tags=parse_tags(resolve("tags", "")),
            debug=(resolve("debug", "false") or "").lower() == "true",
            timeout_ms=_parse_int(resolve("timeout"), DEFAULT_TIMEOUT_MS, "timeout"),
            max_retries=_parse_int(resolve("max_retries"), DEFAULT_MAX_RETRIES, "max_retries"),
            project=resolve("project", DEFAULT_PROJECT),
            attributes=attributes,
        )

        if config.enabled:
            logger.info(f"Loaded config: serverUrl={config.server_url}, launch={config.launch}")
        else:
            logger.debug("Reporter disabled: no serverUrl or apiKey configured")
        return config


def parse_tags(value: Optional[str]) -> Tuple[str, ...]:
    """Split a comma-separated tag list, dropping blanks."""
    if not value:
        return ()
    return tuple(tag.strip() for tag in value.split(",") if tag.strip())


def read_properties(path: Path) -> Dict[str, str]:
    """
    Read a ``key = value`` properties file.

    Keys must carry the ``m00n.`` prefix; it is stripped so the result is keyed
    by option name. Unreadable or missing files yield an empty mapping.
    """
    values: Dict[str, str] = {}
    if not path.is_file():
        return values

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.debug(f"Could not read {path}: {e}")
        return values

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line[0] in "#!":
            continue
        for sep in ("=", ":"):
            if sep in line:
                key, value = line.split(sep, 1)
                break
        else:
            continue
        key = key.strip()
        if key.startswith(FILE_PREFIX):
            values[key[len(FILE_PREFIX):]] = value.strip()

    logger.debug(f"Loaded {len(values)} properties from {path}")
    return values


def _from_environ(environ: Mapping[str, str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for name in OPTION_NAMES:
        value = environ.get(ENV_PREFIX + name.upper())
        if value:
            values[name] = value

    attr_prefix = ENV_PREFIX + "ATTRIBUTE_"
    for key, value in environ.items():
        if key.startswith(attr_prefix) and len(key) > len(attr_prefix):
            values[ATTRIBUTE_PREFIX + key[len(attr_prefix):].lower()] = value
    return values


def _parse_int(value: Optional[str], default: int, name: str) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.debug(f"Invalid {name} value {value!r}, using {default}")
        return default
