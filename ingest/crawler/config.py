"""Typed crawler configuration with JSON/YAML load/save helpers."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml  # type: ignore

from .constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_DATABASE_NAME,
    DEFAULT_DATA_DIR,
    DEFAULT_HTTP_HEADERS,
    DEFAULT_HTTP_RETRY_ATTEMPTS,
    DEFAULT_HTTP_RETRY_DELAY_SECONDS,
    DEFAULT_IMAGE_TIMEOUT_SECONDS,
    DEFAULT_KNOWN_STREAK_THRESHOLD,
    DEFAULT_LIST_FAILURE_THRESHOLD,
    DEFAULT_MAX_IMAGE_BYTES,
    DEFAULT_MAX_PAGES,
    DEFAULT_MAX_REDELIVERIES,
    DEFAULT_PREFECTURE,
    DEFAULT_RECENT_WINDOW,
    DEFAULT_REQUEST_DELAY_SECONDS,
    DEFAULT_STORAGE_RETRY_ATTEMPTS,
    DEFAULT_STORAGE_RETRY_DELAY_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    JSON_INDENT,
    SUPPORTED_CONFIG_SUFFIXES,
)
from .types import JSONDict, JSONValue, PetType

PET_HOME_SOURCE_ID = "pet-home"
PET_HOME_BASE_URL = "https://www.pet-home.jp"

ENV_PREFIX = "CRAWLER_"


def _as_float(value: Any, key: str) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid float for '{key}': {value!r}") from exc


def _as_int(value: Any, key: str) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid int for '{key}': {value!r}") from exc


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"Invalid bool for '{key}': {value!r}")


def _to_pet_types(values: Any) -> list[PetType]:
    if values is None:
        return [PetType.DOG, PetType.CAT]
    if isinstance(values, (str, PetType)):
        values = [values]
    result: list[PetType] = []
    for value in values:
        pet_type = value if isinstance(value, PetType) else PetType(str(value).strip().lower())
        if pet_type not in result:
            result.append(pet_type)
    return result


@dataclass(slots=True)
class SourceConfig:
    """Per-source settings: where listings live and which types it carries."""

    source_id: str
    base_url: str
    pet_types: list[PetType] = field(default_factory=lambda: [PetType.DOG, PetType.CAT])
    max_pages: int | None = None
    request_delay_seconds: float | None = None
    enabled: bool = True
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.source_id = self.source_id.strip().lower()
        if not self.source_id:
            raise ValueError("SourceConfig requires a non-empty source_id")
        self.base_url = self.base_url.strip().rstrip("/")
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be http(s): {self.base_url!r}")
        self.pet_types = _to_pet_types(self.pet_types)
        if not self.pet_types:
            raise ValueError(f"Source '{self.source_id}' must list at least one pet type")
        if self.max_pages is not None and self.max_pages <= 0:
            raise ValueError("max_pages must be > 0 when set")
        if self.request_delay_seconds is not None and self.request_delay_seconds < 0:
            raise ValueError("request_delay_seconds must be >= 0 when set")

    def to_json(self) -> JSONDict:
        return {
            "source_id": self.source_id,
            "base_url": self.base_url,
            "pet_types": [pet_type.value for pet_type in self.pet_types],
            "max_pages": self.max_pages,
            "request_delay_seconds": self.request_delay_seconds,
            "enabled": self.enabled,
            "headers": dict(self.headers),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SourceConfig":
        if not payload.get("source_id"):
            raise ValueError(f"Source config missing 'source_id': {payload!r}")
        return cls(
            source_id=str(payload["source_id"]),
            base_url=str(payload.get("base_url", "")),
            pet_types=_to_pet_types(payload.get("pet_types")),
            max_pages=_as_int(payload.get("max_pages"), "max_pages"),
            request_delay_seconds=_as_float(
                payload.get("request_delay_seconds"),
                "request_delay_seconds",
            ),
            enabled=_as_bool(payload.get("enabled", True), "enabled"),
            headers={str(k): str(v) for k, v in dict(payload.get("headers", {})).items()},
        )


def default_sources() -> list[SourceConfig]:
    return [SourceConfig(source_id=PET_HOME_SOURCE_ID, base_url=PET_HOME_BASE_URL)]


@dataclass(slots=True)
class CrawlConfig:
    """Top-level crawler configuration used by the orchestrator and its stores."""

    sources: list[SourceConfig] = field(default_factory=default_sources)
    data_dir: str = DEFAULT_DATA_DIR

    max_pages: int = DEFAULT_MAX_PAGES
    request_delay_seconds: float = DEFAULT_REQUEST_DELAY_SECONDS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    image_timeout_seconds: float = DEFAULT_IMAGE_TIMEOUT_SECONDS
    max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES

    http_retry_attempts: int = DEFAULT_HTTP_RETRY_ATTEMPTS
    http_retry_delay_seconds: float = DEFAULT_HTTP_RETRY_DELAY_SECONDS
    storage_retry_attempts: int = DEFAULT_STORAGE_RETRY_ATTEMPTS
    storage_retry_delay_seconds: float = DEFAULT_STORAGE_RETRY_DELAY_SECONDS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    known_streak_threshold: int = DEFAULT_KNOWN_STREAK_THRESHOLD
    list_failure_threshold: int = DEFAULT_LIST_FAILURE_THRESHOLD
    recent_window: int = DEFAULT_RECENT_WINDOW
    max_redeliveries: int = DEFAULT_MAX_REDELIVERIES

    default_prefecture: str = DEFAULT_PREFECTURE
    user_agent: str = DEFAULT_USER_AGENT
    default_headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HTTP_HEADERS))

    metadata: dict[str, JSONValue] = field(default_factory=dict)

    _source_index: dict[str, SourceConfig] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_pages <= 0:
            raise ValueError("max_pages must be > 0")
        if self.request_delay_seconds < 0:
            raise ValueError("request_delay_seconds must be >= 0")
        if self.timeout_seconds <= 0 or self.image_timeout_seconds <= 0:
            raise ValueError("timeouts must be > 0")
        if self.max_image_bytes <= 0:
            raise ValueError("max_image_bytes must be > 0")
        if self.http_retry_attempts <= 0 or self.storage_retry_attempts <= 0:
            raise ValueError("retry attempts must be > 0")
        if self.http_retry_delay_seconds < 0 or self.storage_retry_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.known_streak_threshold <= 0 or self.list_failure_threshold <= 0:
            raise ValueError("stop thresholds must be > 0")
        if self.recent_window <= 0:
            raise ValueError("recent_window must be > 0")
        if self.max_redeliveries < 0:
            raise ValueError("max_redeliveries must be >= 0")

        coerced: dict[str, SourceConfig] = {}
        for source in self.sources:
            if isinstance(source, Mapping):
                source = SourceConfig.from_dict(source)
            coerced[source.source_id] = source
        self.sources = list(coerced.values())
        if not self.sources:
            raise ValueError("No sources configured")
        self._source_index = coerced

    @property
    def source_ids(self) -> list[str]:
        return [source.source_id for source in self.sources if source.enabled]

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / DEFAULT_DATABASE_NAME

    def get_source(self, source_id: str) -> SourceConfig | None:
        source = self._source_index.get(source_id.strip().lower())
        if source is None or not source.enabled:
            return None
        return source

    def max_pages_for(self, source_id: str) -> int:
        source = self.get_source(source_id)
        if source and source.max_pages is not None:
            return source.max_pages
        return self.max_pages

    def request_delay_for(self, source_id: str) -> float:
        source = self.get_source(source_id)
        if source and source.request_delay_seconds is not None:
            return source.request_delay_seconds
        return self.request_delay_seconds

    def headers_for(self, source_id: str | None = None) -> dict[str, str]:
        """Return request headers merged from global and per-source settings."""

        merged: dict[str, str] = dict(self.default_headers)
        source = self.get_source(source_id) if source_id else None
        if source:
            merged.update(source.headers)

        merged.setdefault("User-Agent", self.user_agent)
        return merged

    def to_dict(self) -> JSONDict:
        """Serialize config for logs and reproducibility."""

        return {
            "sources": [source.to_json() for source in self.sources],
            "data_dir": self.data_dir,
            "max_pages": self.max_pages,
            "request_delay_seconds": self.request_delay_seconds,
            "timeout_seconds": self.timeout_seconds,
            "image_timeout_seconds": self.image_timeout_seconds,
            "max_image_bytes": self.max_image_bytes,
            "http_retry_attempts": self.http_retry_attempts,
            "http_retry_delay_seconds": self.http_retry_delay_seconds,
            "storage_retry_attempts": self.storage_retry_attempts,
            "storage_retry_delay_seconds": self.storage_retry_delay_seconds,
            "backoff_multiplier": self.backoff_multiplier,
            "known_streak_threshold": self.known_streak_threshold,
            "list_failure_threshold": self.list_failure_threshold,
            "recent_window": self.recent_window,
            "max_redeliveries": self.max_redeliveries,
            "default_prefecture": self.default_prefecture,
            "user_agent": self.user_agent,
            "default_headers": self.default_headers,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CrawlConfig":
        """Build config from a parsed dictionary."""

        raw_sources = payload.get("sources")
        sources = (
            [SourceConfig.from_dict(item) for item in raw_sources]
            if raw_sources
            else default_sources()
        )

        return cls(
            sources=sources,
            data_dir=str(payload.get("data_dir", DEFAULT_DATA_DIR)),
            max_pages=int(payload.get("max_pages", DEFAULT_MAX_PAGES)),
            request_delay_seconds=float(
                payload.get("request_delay_seconds", DEFAULT_REQUEST_DELAY_SECONDS)
            ),
            timeout_seconds=float(payload.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            image_timeout_seconds=float(
                payload.get("image_timeout_seconds", DEFAULT_IMAGE_TIMEOUT_SECONDS)
            ),
            max_image_bytes=int(payload.get("max_image_bytes", DEFAULT_MAX_IMAGE_BYTES)),
            http_retry_attempts=int(payload.get("http_retry_attempts", DEFAULT_HTTP_RETRY_ATTEMPTS)),
            http_retry_delay_seconds=float(
                payload.get("http_retry_delay_seconds", DEFAULT_HTTP_RETRY_DELAY_SECONDS)
            ),
            storage_retry_attempts=int(
                payload.get("storage_retry_attempts", DEFAULT_STORAGE_RETRY_ATTEMPTS)
            ),
            storage_retry_delay_seconds=float(
                payload.get("storage_retry_delay_seconds", DEFAULT_STORAGE_RETRY_DELAY_SECONDS)
            ),
            backoff_multiplier=float(payload.get("backoff_multiplier", DEFAULT_BACKOFF_MULTIPLIER)),
            known_streak_threshold=int(
                payload.get("known_streak_threshold", DEFAULT_KNOWN_STREAK_THRESHOLD)
            ),
            list_failure_threshold=int(
                payload.get("list_failure_threshold", DEFAULT_LIST_FAILURE_THRESHOLD)
            ),
            recent_window=int(payload.get("recent_window", DEFAULT_RECENT_WINDOW)),
            max_redeliveries=int(payload.get("max_redeliveries", DEFAULT_MAX_REDELIVERIES)),
            default_prefecture=str(payload.get("default_prefecture", DEFAULT_PREFECTURE)),
            user_agent=str(payload.get("user_agent", DEFAULT_USER_AGENT)),
            default_headers={
                str(k): str(v)
                for k, v in dict(payload.get("default_headers", DEFAULT_HTTP_HEADERS)).items()
            },
            metadata=dict(payload.get("metadata", {})),
        )


def apply_env_overrides(
    payload: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Overlay `CRAWLER_*` environment variables onto a raw config mapping.

    `CRAWLER_BASE_URL` rewrites the base URL of every configured source; the
    other variables map onto top-level keys of the same name.
    """

    env = os.environ if environ is None else environ
    merged = dict(payload)

    simple_keys = {
        "MAX_PAGES": ("max_pages", _as_int),
        "REQUEST_DELAY_SECONDS": ("request_delay_seconds", _as_float),
        "TIMEOUT_SECONDS": ("timeout_seconds", _as_float),
        "HTTP_RETRY_ATTEMPTS": ("http_retry_attempts", _as_int),
        "STORAGE_RETRY_ATTEMPTS": ("storage_retry_attempts", _as_int),
    }
    for suffix, (key, convert) in simple_keys.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is not None and raw.strip():
            merged[key] = convert(raw.strip(), ENV_PREFIX + suffix)

    user_agent = env.get(ENV_PREFIX + "USER_AGENT")
    if user_agent and user_agent.strip():
        merged["user_agent"] = user_agent.strip()

    data_dir = env.get(ENV_PREFIX + "DATA_DIR")
    if data_dir and data_dir.strip():
        merged["data_dir"] = data_dir.strip()

    base_url = env.get(ENV_PREFIX + "BASE_URL")
    if base_url and base_url.strip():
        raw_sources = merged.get("sources") or [source.to_json() for source in default_sources()]
        merged["sources"] = [{**dict(source), "base_url": base_url.strip()} for source in raw_sources]

    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML config at {path} must be a mapping at top level")
    return data


def load_config(path: str | Path | None = None, *, environ: Mapping[str, str] | None = None) -> CrawlConfig:
    """Load CrawlConfig from a JSON/YAML path (or defaults) plus env overrides."""

    payload: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        suffix = config_path.suffix.lower()
        if suffix not in SUPPORTED_CONFIG_SUFFIXES:
            raise ValueError(
                f"Unsupported config suffix '{suffix}'. Supported: {SUPPORTED_CONFIG_SUFFIXES}"
            )

        if suffix == ".json":
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        else:
            payload = _load_yaml(config_path)

        if not isinstance(payload, dict):
            raise ValueError(f"Config at {config_path} must be a mapping")

    return CrawlConfig.from_dict(apply_env_overrides(payload, environ))


def save_config(config: CrawlConfig, path: str | Path) -> None:
    """Save CrawlConfig as JSON or YAML based on file extension."""

    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    suffix = out_path.suffix.lower()
    payload = config.to_dict()

    if suffix == ".json":
        out_path.write_text(
            json.dumps(payload, indent=JSON_INDENT, sort_keys=True, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        return

    if suffix in {".yaml", ".yml"}:
        out_path.write_text(
            yaml.safe_dump(payload, sort_keys=False, allow_unicode=True),
            encoding="utf-8",
        )
        return

    raise ValueError(
        f"Unsupported config suffix '{suffix}'. Supported: {SUPPORTED_CONFIG_SUFFIXES}"
    )


__all__ = [
    "CrawlConfig",
    "ENV_PREFIX",
    "PET_HOME_BASE_URL",
    "PET_HOME_SOURCE_ID",
    "SourceConfig",
    "apply_env_overrides",
    "default_sources",
    "load_config",
    "save_config",
]
