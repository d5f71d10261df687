"""
Assistant

LLM-backed judgments used by the lifecycle.
"""

from .oracle import Oracle, OracleError

__all__ = ["Oracle", "OracleError"]
