"""
Knowledge Bot

Slack question-answering assistant backed by Notion FAQ documents.

Lifecycle:
- Questions the bot cannot answer become escalations; owner replies are
  later synthesized into new FAQ entries
- Answers the bot gives are tracked; owner corrections become FAQ edits
  after a lead approves them over DM
- Every correction is written to the document at most once

Usage:
    from kbot.common import load_config
    from kbot.tracking import EscalationStore, TrackedAnswerStore
    from kbot.server import run_server
"""

__version__ = "0.1.0"
