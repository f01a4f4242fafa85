"""Configuration loader for the job catalog pipeline.

Reads config.yaml and returns typed configuration objects that the sync,
alert and delivery pipelines consume. Secrets never live in the YAML;
they come from the environment (see `EmailConfig.api_key`).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

# Title keywords that are never ingested (case-insensitive substring).
DEFAULT_TITLE_EXCLUDE = [
    "janitor",
    "cleaning",
    "property maintenance",
    "maintenance",
    "maintenance technician",
    "facilities",
    "facilities manager",
    "regional facilities",
    "engineering",
    "engineer",
    "information technology",
    "helpdesk",
    "desktop support",
    "network",
    "licensed real estate agent",
    "real estate agent",
]

# Board slugs that title-casing gets wrong.
DEFAULT_COMPANY_OVERRIDES = {
    "bgeinc": "BGE, Inc.",
    "homelight": "HomeLight",
    "figure": "FIGURE",
    "cbre": "CBRE",
}


@dataclass
class SourceConfig:
    """Configuration for a single listing source."""

    name: str
    source_type: str = "greenhouse"
    board: str = ""
    company: str = ""
    enabled: bool = True
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def source_id(self) -> str:
        """Catalog `source` value, e.g. "greenhouse:acme"."""
        return f"{self.source_type}:{self.board or self.name}"


@dataclass
class AlertConfig:
    """Settings for the saved-search alert cycle."""

    default_lookback_hours: float = 24.0
    retry_failed: bool = False


@dataclass
class EmailConfig:
    """Outbound email settings. The API key is read from RESEND_API_KEY."""

    from_address: str = "Job Alerts <alerts@example.com>"
    api_url: str = "https://api.resend.com/emails"
    board_url: str = ""

    @property
    def api_key(self) -> str:
        return os.environ.get("RESEND_API_KEY", "")


@dataclass
class PipelineConfig:
    """Top-level pipeline configuration."""

    sources: list[SourceConfig] = field(default_factory=list)
    title_exclude: list[str] = field(default_factory=lambda: list(DEFAULT_TITLE_EXCLUDE))
    company_overrides: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_COMPANY_OVERRIDES)
    )
    alerts: AlertConfig = field(default_factory=AlertConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    dry_run: bool = False
    output_dir: str = "output"
    data_dir: str = "data"
    log_level: str = "INFO"
    max_workers: int = 1
    request_delay_seconds: float = 1.0  # polite delay between HTTP requests
    request_timeout_seconds: float = 30.0
    request_retries: int = 3
    user_agent: str = "jobcatalog-sync/1.0"

    @property
    def enabled_sources(self) -> list[SourceConfig]:
        return [s for s in self.sources if s.enabled]


def _parse_source(raw: Any) -> SourceConfig:
    # A bare string is shorthand for a Greenhouse board slug.
    if isinstance(raw, str):
        return SourceConfig(name=raw, board=raw)
    return SourceConfig(
        name=raw["name"],
        source_type=raw.get("type", raw.get("source_type", "greenhouse")),
        board=raw.get("board", raw["name"]),
        company=raw.get("company", ""),
        enabled=raw.get("enabled", True),
        params=raw.get("params", {}),
    )


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes"}


def load_config(path: Path | str | None = None) -> PipelineConfig:
    """Load and validate the pipeline configuration from a YAML file."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.warning("Config file not found at %s — using defaults", config_path)
        config = PipelineConfig()
        config.dry_run = config.dry_run or _env_flag("JOBCATALOG_DRY_RUN")
        return config

    with open(config_path, "r") as f:
        raw = yaml.safe_load(f)

    if not raw:
        raw = {}

    sources = [_parse_source(src) for src in raw.get("sources", [])]

    alerts_raw = raw.get("alerts", {}) or {}
    alerts = AlertConfig(
        default_lookback_hours=float(alerts_raw.get("default_lookback_hours", 24)),
        retry_failed=bool(alerts_raw.get("retry_failed", False)),
    )

    email_raw = raw.get("email", {}) or {}
    email = EmailConfig(
        from_address=email_raw.get("from_address", EmailConfig.from_address),
        api_url=email_raw.get("api_url", EmailConfig.api_url),
        board_url=email_raw.get("board_url", ""),
    )

    overrides = dict(DEFAULT_COMPANY_OVERRIDES)
    overrides.update(raw.get("company_overrides", {}) or {})

    return PipelineConfig(
        sources=sources,
        title_exclude=raw.get("title_exclude", list(DEFAULT_TITLE_EXCLUDE)),
        company_overrides=overrides,
        alerts=alerts,
        email=email,
        dry_run=bool(raw.get("dry_run", False)) or _env_flag("JOBCATALOG_DRY_RUN"),
        output_dir=raw.get("output_dir", "output"),
        data_dir=raw.get("data_dir", "data"),
        log_level=raw.get("log_level", "INFO"),
        max_workers=int(raw.get("max_workers", 1)),
        request_delay_seconds=raw.get("request_delay_seconds", 1.0),
        request_timeout_seconds=raw.get("request_timeout_seconds", 30.0),
        request_retries=int(raw.get("request_retries", 3)),
        user_agent=raw.get("user_agent", PipelineConfig.user_agent),
    )
