"""
Configuration Management for the Knowledge Bot

Loads configuration from ~/.kbot/config.json and environment variables.
"""

import os
import sys
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional

# Default config paths
CONFIG_DIR = Path.home() / ".kbot"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
DATA_DIR = CONFIG_DIR / "data"

GENERAL_FAQ_ID = "general-faq"


@dataclass
class SlackConfig:
    """Slack workspace configuration"""
    bot_token: str = ""
    signing_secret: str = ""
    port: int = 3000
    watch_channels: List[str] = field(default_factory=list)


@dataclass
class NotionConfig:
    """Notion API configuration"""
    api_key: str = ""
    api_version: str = "2022-06-28"
    cache_ttl_seconds: int = 600  # 10 minutes
    max_block_depth: int = 3


@dataclass
class LLMConfig:
    """LLM provider configuration"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"


@dataclass
class GeneralFaqConfig:
    """Fallback FAQ used when a question matches no knowledge area"""
    enabled: bool = False
    notion_page_id: str = ""
    source_page_ids: List[str] = field(default_factory=list)
    admin_user_ids: List[str] = field(default_factory=list)


@dataclass
class TimingConfig:
    """Lifecycle timing (all durations in seconds unless noted)"""
    check_interval_seconds: int = 300  # 5 minutes
    initial_check_delay_seconds: int = 30
    synthesis_delay_seconds: int = 1800  # 30 minutes
    correction_check_delay_seconds: int = 10
    pending_action_ttl_seconds: int = 600  # 10 minutes
    retention_days: int = 30
    stale_after_days: int = 14


@dataclass
class FeaturesConfig:
    """Feature flags"""
    faq_correction: bool = True


@dataclass
class KbotConfig:
    """Main Knowledge Bot configuration"""
    slack: SlackConfig = field(default_factory=SlackConfig)
    notion: NotionConfig = field(default_factory=NotionConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    general_faq: GeneralFaqConfig = field(default_factory=GeneralFaqConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    features: FeaturesConfig = field(default_factory=FeaturesConfig)
    data_dir: str = str(DATA_DIR)
    log_level: str = "INFO"
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_csv(value) -> List[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    if not value:
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _parse_slack_config(data: dict) -> SlackConfig:
    """Parse slack section from config dict"""
    slack_data = data.get("slack", {})
    return SlackConfig(
        bot_token=slack_data.get("bot_token", ""),
        signing_secret=slack_data.get("signing_secret", ""),
        port=slack_data.get("port", 3000),
        watch_channels=_parse_csv(slack_data.get("watch_channels", [])),
    )


def _parse_notion_config(data: dict) -> NotionConfig:
    """Parse notion section from config dict"""
    notion_data = data.get("notion", {})
    return NotionConfig(
        api_key=notion_data.get("api_key", ""),
        api_version=notion_data.get("api_version", "2022-06-28"),
        cache_ttl_seconds=notion_data.get("cache_ttl_seconds", 600),
        max_block_depth=notion_data.get("max_block_depth", 3),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMConfig(
        provider=llm_data.get("provider", "anthropic"),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", "claude-sonnet-4-20250514"),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", "gpt-4o-mini"),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", "gemini-2.0-flash-exp"),
    )


def _parse_general_faq_config(data: dict) -> GeneralFaqConfig:
    """Parse general_faq section from config dict"""
    faq_data = data.get("general_faq", {})
    return GeneralFaqConfig(
        enabled=faq_data.get("enabled", False),
        notion_page_id=faq_data.get("notion_page_id", ""),
        source_page_ids=_parse_csv(faq_data.get("source_page_ids", [])),
        admin_user_ids=_parse_csv(faq_data.get("admin_user_ids", [])),
    )


def _parse_timing_config(data: dict) -> TimingConfig:
    """Parse timing section from config dict"""
    timing_data = data.get("timing", {})
    defaults = TimingConfig()
    return TimingConfig(
        check_interval_seconds=timing_data.get("check_interval_seconds", defaults.check_interval_seconds),
        initial_check_delay_seconds=timing_data.get("initial_check_delay_seconds", defaults.initial_check_delay_seconds),
        synthesis_delay_seconds=timing_data.get("synthesis_delay_seconds", defaults.synthesis_delay_seconds),
        correction_check_delay_seconds=timing_data.get("correction_check_delay_seconds", defaults.correction_check_delay_seconds),
        pending_action_ttl_seconds=timing_data.get("pending_action_ttl_seconds", defaults.pending_action_ttl_seconds),
        retention_days=timing_data.get("retention_days", defaults.retention_days),
        stale_after_days=timing_data.get("stale_after_days", defaults.stale_after_days),
    )


def _parse_features_config(data: dict) -> FeaturesConfig:
    """Parse features section from config dict"""
    features_data = data.get("features", {})
    return FeaturesConfig(
        faq_correction=features_data.get("faq_correction", True),
    )


def load_config() -> KbotConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.kbot/config.json)
    3. Default values
    """
    config = KbotConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.slack = _parse_slack_config(data)
            config.notion = _parse_notion_config(data)
            config.llm = _parse_llm_config(data)
            config.general_faq = _parse_general_faq_config(data)
            config.timing = _parse_timing_config(data)
            config.features = _parse_features_config(data)
            config.data_dir = data.get("data_dir", str(DATA_DIR))
            config.log_level = data.get("log_level", "INFO")
        except (json.JSONDecodeError, IOError) as e:
            print(f"[Config] Warning: Failed to load config file: {e}")

    # Environment variable overrides
    if os.getenv("SLACK_BOT_TOKEN"):
        config.slack.bot_token = os.getenv("SLACK_BOT_TOKEN")
        config._env_sourced_keys.add("bot_token")
    if os.getenv("SLACK_SIGNING_SECRET"):
        config.slack.signing_secret = os.getenv("SLACK_SIGNING_SECRET")
        config._env_sourced_keys.add("signing_secret")
    if os.getenv("KBOT_PORT"):
        config.slack.port = int(os.getenv("KBOT_PORT"))
    if os.getenv("WATCH_CHANNELS"):
        config.slack.watch_channels = _parse_csv(os.getenv("WATCH_CHANNELS"))

    if os.getenv("NOTION_API_KEY"):
        config.notion.api_key = os.getenv("NOTION_API_KEY")
        config._env_sourced_keys.add("notion_api_key")
    if os.getenv("NOTION_CACHE_TTL_SECONDS"):
        config.notion.cache_ttl_seconds = int(os.getenv("NOTION_CACHE_TTL_SECONDS"))

    if os.getenv("GENERAL_FAQ_NOTION_PAGE_ID"):
        config.general_faq.notion_page_id = os.getenv("GENERAL_FAQ_NOTION_PAGE_ID")
        config.general_faq.enabled = True
    if os.getenv("GENERAL_FAQ_ADMIN_USER_IDS"):
        config.general_faq.admin_user_ids = _parse_csv(os.getenv("GENERAL_FAQ_ADMIN_USER_IDS"))

    if os.getenv("ESCALATION_CHECK_INTERVAL_SECONDS"):
        config.timing.check_interval_seconds = int(os.getenv("ESCALATION_CHECK_INTERVAL_SECONDS"))
    if os.getenv("SYNTHESIS_DELAY_SECONDS"):
        config.timing.synthesis_delay_seconds = int(os.getenv("SYNTHESIS_DELAY_SECONDS"))
    if os.getenv("CORRECTION_CHECK_DELAY_SECONDS"):
        config.timing.correction_check_delay_seconds = int(os.getenv("CORRECTION_CHECK_DELAY_SECONDS"))

    if os.getenv("FEATURE_FAQ_CORRECTION"):
        config.features.faq_correction = os.getenv("FEATURE_FAQ_CORRECTION").lower() in ("1", "true", "yes")

    # LLM env var overrides (target config.llm, track env-sourced keys)
    _env_llm_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "KBOT_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)

    if os.getenv("KBOT_DATA_DIR"):
        config.data_dir = os.getenv("KBOT_DATA_DIR")
    if os.getenv("KBOT_LOG_LEVEL"):
        config.log_level = os.getenv("KBOT_LOG_LEVEL")

    return config


def ensure_directories(config: Optional[KbotConfig] = None) -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    data_dir = Path(config.data_dir) if config else DATA_DIR
    data_dir.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Install stderr and file handlers on the ``kbot`` logger tree."""
    root = logging.getLogger("kbot")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if not root.handlers:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        root.addHandler(stream)

        target = log_file or (LOGS_DIR / "kbot.log")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(target)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning("File logging disabled: %s", e)

    # Third-party clients are chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("slack_sdk").setLevel(logging.WARNING)
