"""
Loads and handles config from config.yml
Delivery secrets (TELEGRAM_BOT_TOKEN, EMAIL_USERNAME, EMAIL_PASSWORD) are loaded from .env
"""
import os
import logging
from typing import List, Dict, Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from core.scoring import ScoringWeights

logger = logging.getLogger(__name__)

DEFAULT_STAGE_ORDER = [
    "ingest",
    "filter",
    "extract",
    "tag",
    "cluster",
    "synthesize",
    "score",
    "backvalidate",
    "trends",
    "alerts",
]

DEFAULT_REGION_SOURCES = [
    "australia", "melbourne", "sydney", "brisbane", "perth", "adelaide", "ausfinance",
]

DEFAULT_REGION_TERMS = [
    "australia", "australian", "aussie", "melbourne", "sydney", "brisbane", "perth",
    "adelaide", "queensland", "nsw", "victoria", "tasmania", "darwin", "canberra",
    "ato", "centrelink", "medicare", "bunnings", "woolies", "coles", "abn", "gst",
    "superannuation", "tradie", "arvo",
]


class SourceConfig(BaseModel):
    """Configuration for a single content source."""
    type: str  # reddit, hackernews
    enabled: bool = True
    subreddit: Optional[str] = None  # For reddit

    @property
    def source_id(self) -> str:
        if self.type.lower() == "reddit" and self.subreddit:
            return self.subreddit
        return self.type.lower()


class IngestionConfig(BaseModel):
    """Source list and per-run limits for the ingest stage."""
    sources: List[SourceConfig] = []
    sources_per_run: int = Field(1, ge=1)
    posts_per_source: int = Field(25, ge=1, le=100)
    min_comments: int = 3  # posts with more comments than this get their thread fetched
    max_comments_per_run: int = 20
    min_content_length: int = 50


class StagesConfig(BaseModel):
    """Batch ceilings and thresholds for the item-level stages."""
    max_attempts: int = Field(3, ge=1)
    filter_batch_size: int = Field(8, ge=1)
    min_content_length: int = 80
    min_confidence: float = Field(35.0, ge=0, le=100)
    extract_batch_size: int = Field(5, ge=1)
    tag_batch_size: int = Field(5, ge=1)
    cluster_batch_size: int = Field(10, ge=1)
    synthesis_batch_size: int = Field(2, ge=1)
    min_cluster_size: int = Field(2, ge=1)
    synthesis_member_sample: int = 15
    score_batch_size: int = Field(2, ge=1)


class ClusteringConfig(BaseModel):
    similarity_threshold: float = Field(0.82, ge=0.0, le=1.0)


class RegionConfig(BaseModel):
    """Target region used for the regional-fit boost."""
    name: str = "australia"
    sources: List[str] = DEFAULT_REGION_SOURCES
    terms: List[str] = DEFAULT_REGION_TERMS


class ScoringConfig(BaseModel):
    weights: ScoringWeights = ScoringWeights()
    region: RegionConfig = RegionConfig()
    member_sample: int = 20


class BackValidationConfig(BaseModel):
    batch_size: int = Field(5, ge=1)
    validation_threshold: int = Field(3, ge=1)
    cooldown_hours: float = Field(24.0, gt=0)
    max_keywords: int = Field(5, ge=1)
    results_per_query: int = Field(25, ge=1)
    membership_weight: float = Field(0.8, ge=0.0, le=1.0)
    concurrency: int = Field(4, ge=1)
    max_candidates: int = Field(40, ge=1)


class AlertConfig(BaseModel):
    min_viable_members: int = 5

    new_cluster_window_hours: float = 1
    new_cluster_suppression_hours: float = 24 * 30

    spike_multiple: float = 3.0
    spike_min_count: int = 5
    spike_min_current: int = 3
    spike_window_hours: float = 24
    spike_baseline_days: int = 7
    spike_suppression_hours: float = 24

    gap_min_mentions: int = 3
    gap_window_hours: float = 24
    gap_suppression_hours: float = 24 * 7

    severity_ratio: float = 0.5
    severity_min_count: int = 3
    severity_window_hours: float = 24
    severity_suppression_hours: float = 24

    retention_days: int = 30


class TrendConfig(BaseModel):
    spike_multiple: float = 3.0
    spike_min_count: int = 5
    history_days: int = Field(90, ge=31)


class SchedulerConfig(BaseModel):
    slot_minutes: int = Field(10, ge=1)
    stages: List[str] = DEFAULT_STAGE_ORDER

    @field_validator("stages")
    @classmethod
    def _known_stages(cls, value: List[str]) -> List[str]:
        unknown = [s for s in value if s not in DEFAULT_STAGE_ORDER]
        if unknown:
            raise ValueError(f"Unknown stages in scheduler order: {unknown}")
        if not value:
            raise ValueError("Scheduler needs at least one stage")
        return value


class Config(BaseModel):
    # Core
    DATABASE_PATH: str
    FAISS_INDEX_PATH: str
    LOG_LEVEL: str = "INFO"

    # Ollama
    OLLAMA_BASE_URL: str
    OLLAMA_MODEL: str
    OLLAMA_EMBED_MODEL: str
    OLLAMA_TIMEOUT: float = 120.0

    # Pipeline
    ingestion: IngestionConfig = IngestionConfig()
    stages: StagesConfig = StagesConfig()
    clustering: ClusteringConfig = ClusteringConfig()
    scoring: ScoringConfig = ScoringConfig()
    backvalidation: BackValidationConfig = BackValidationConfig()
    alerts: AlertConfig = AlertConfig()
    trends: TrendConfig = TrendConfig()
    scheduler: SchedulerConfig = SchedulerConfig()

    # Alert delivery
    ALERT_OUTPUT_DIR: Optional[str] = "output"

    EMAIL_ENABLED: bool = False
    EMAIL_SMTP_HOST: Optional[str] = None
    EMAIL_SMTP_PORT: Optional[int] = None
    EMAIL_USERNAME: Optional[str] = None
    EMAIL_PASSWORD: Optional[str] = None
    EMAIL_FROM: Optional[str] = None
    EMAIL_TO: Optional[str] = None

    TELEGRAM_ENABLED: bool = False
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None


def _bool(value: str | bool) -> bool:
    """Convert string or bool to boolean."""
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


def _get_config_path() -> str:
    """Get the path to config.yml, handling different working directories."""
    override = os.getenv("PAIN_RADAR_CONFIG")
    if override:
        return override

    if os.path.exists('resources/config.yml'):
        return 'resources/config.yml'

    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    config_path = os.path.join(project_root, 'resources', 'config.yml')
    if os.path.exists(config_path):
        return config_path

    raise FileNotFoundError("Cannot find resources/config.yml")


def _parse_ingestion_config(data: Dict[str, Any]) -> IngestionConfig:
    """Parse ingestion configuration from YAML data."""
    sources = []
    for src in data.get("sources", []):
        if isinstance(src, str):
            # shorthand: a bare subreddit name
            src = {"type": "reddit", "subreddit": src}
        sources.append(SourceConfig(
            type=src.get("type", ""),
            enabled=_bool(src.get("enabled", True)),
            subreddit=src.get("subreddit"),
        ))

    limits = {k: v for k, v in data.items() if k != "sources"}
    return IngestionConfig(sources=sources, **limits)


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from config.yml and delivery secrets from .env."""
    load_dotenv()

    config_path = path or _get_config_path()

    with open(config_path, 'r') as file:
        config = yaml.safe_load(file) or {}

    logger.debug(f"Loaded config from {config_path}")

    return Config(
        DATABASE_PATH=config.get("DATABASE_PATH", "data/pain_radar.db"),
        FAISS_INDEX_PATH=config.get("FAISS_INDEX_PATH", "data/clusters.index"),
        LOG_LEVEL=str(config.get("LOG_LEVEL", "INFO")).upper(),

        OLLAMA_BASE_URL=os.getenv("OLLAMA_BASE_URL", config.get("OLLAMA_BASE_URL", "http://localhost:11434")),
        OLLAMA_MODEL=config.get("OLLAMA_MODEL", "llama3.1:8b"),
        OLLAMA_EMBED_MODEL=config.get("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        OLLAMA_TIMEOUT=float(config.get("OLLAMA_TIMEOUT", 120)),

        ingestion=_parse_ingestion_config(config.get("ingestion", {})),
        stages=StagesConfig(**config.get("stages", {})),
        clustering=ClusteringConfig(**config.get("clustering", {})),
        scoring=ScoringConfig(**config.get("scoring", {})),
        backvalidation=BackValidationConfig(**config.get("backvalidation", {})),
        alerts=AlertConfig(**config.get("alerts", {})),
        scheduler=SchedulerConfig(**config.get("scheduler", {})),

        ALERT_OUTPUT_DIR=config.get("ALERT_OUTPUT_DIR", "output"),

        EMAIL_ENABLED=_bool(config.get("EMAIL_ENABLED", False)),
        EMAIL_SMTP_HOST=config.get("EMAIL_SMTP_HOST"),
        EMAIL_SMTP_PORT=int(config.get("EMAIL_SMTP_PORT", 587)) if config.get("EMAIL_SMTP_PORT") else None,
        EMAIL_USERNAME=os.getenv("EMAIL_USERNAME"),
        EMAIL_PASSWORD=os.getenv("EMAIL_PASSWORD"),
        EMAIL_FROM=config.get("EMAIL_FROM"),
        EMAIL_TO=config.get("EMAIL_TO"),

        TELEGRAM_ENABLED=_bool(config.get("TELEGRAM_ENABLED", False)),
        TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN"),
        TELEGRAM_CHAT_ID=os.getenv("TELEGRAM_CHAT_ID"),
    )


def get_enabled_sources(ingestion_config: IngestionConfig) -> List[SourceConfig]:
    """Get only enabled sources from an ingestion config."""
    return [src for src in ingestion_config.sources if src.enabled]
