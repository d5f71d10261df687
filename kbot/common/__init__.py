"""
Knowledge Bot Common Module

Shared infrastructure: configuration, LLM access, and schemas.
"""

from .config import KbotConfig, load_config, configure_logging, GENERAL_FAQ_ID
from .llm_client import LLMClient

__all__ = [
    "KbotConfig",
    "load_config",
    "configure_logging",
    "GENERAL_FAQ_ID",
    "LLMClient",
]
