"""
Knowledge Bot Server

FastAPI server for Slack webhooks and the periodic FAQ lifecycle sweep.

Endpoints:
- POST /slack/events: Slack webhook endpoint
- GET /health: Health check
- GET /stats: Record counts per status

Pipeline:
1. Receive webhook event
2. Verify signature and parse into a Message
3. Channel messages: question intake or owner-reply tracking
4. Direct messages: approval and knowledge-area conversations
5. Background sweep: synthesis of escalations, correction requests
"""

import asyncio
import contextlib
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from slack_sdk.errors import SlackApiError

from .assistant.oracle import Oracle
from .common.config import KbotConfig, configure_logging, ensure_directories, load_config
from .common.llm_client import LLMClient
from .common.schemas.records import utc_now
from .knowledge.cache import DocumentCache
from .knowledge.directory import KnowledgeDirectory
from .knowledge.notion import NotionDocumentStore
from .lifecycle.approvals import ConversationHandler
from .lifecycle.channel_router import ChannelRouter
from .lifecycle.jobs import SynthesisJob
from .messaging.base import Message
from .messaging.slack import SlackEventHandler, SlackMessaging
from .tracking.answers import TrackedAnswerStore
from .tracking.corrections_ledger import CorrectionLedger
from .tracking.escalations import EscalationStore
from .tracking.pending_actions import PendingActionStore

logger = logging.getLogger("kbot.server")


# Global state
config: Optional[KbotConfig] = None
escalations: Optional[EscalationStore] = None
answers: Optional[TrackedAnswerStore] = None
pending: Optional[PendingActionStore] = None
ledger: Optional[CorrectionLedger] = None
directory: Optional[KnowledgeDirectory] = None
documents: Optional[NotionDocumentStore] = None
oracle: Optional[Oracle] = None
router: Optional[ChannelRouter] = None
conversations: Optional[ConversationHandler] = None
job: Optional[SynthesisJob] = None
slack_handler: Optional[SlackEventHandler] = None
sweep_task: Optional[asyncio.Task] = None


async def _resolve_watch_channels(messaging: SlackMessaging, names) -> Optional[Dict[str, str]]:
    """Channel id to name for the configured channels; None means every channel."""
    if not names:
        return None
    try:
        return await messaging.resolve_channels(names)
    except SlackApiError as e:
        logger.error("Could not resolve watch channels: %s", e.response.get("error"))
        return {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    global config, escalations, answers, pending, ledger, directory, documents
    global oracle, router, conversations, job, slack_handler, sweep_task

    # Load config
    config = load_config()
    ensure_directories(config)
    configure_logging(config.log_level)
    logger.info("Starting up...")

    # Initialize record stores
    data_dir = Path(config.data_dir)
    timing = config.timing
    escalations = EscalationStore(path=data_dir / "escalations.json")
    answers = TrackedAnswerStore(path=data_dir / "tracked_answers.json")
    pending = PendingActionStore(path=data_dir / "pending_actions.json", ttl=timing.pending_action_ttl_seconds)
    ledger = CorrectionLedger(path=data_dir / "applied_corrections.json")
    directory = KnowledgeDirectory(path=data_dir / "domains.json", general_faq=config.general_faq)
    logger.info(
        "Stores ready: %d escalation(s), %d tracked answer(s), %d knowledge area(s)",
        escalations.get_stats()["total"], answers.get_stats()["total"], len(directory.all()),
    )

    # Initialize document store
    documents = NotionDocumentStore(
        api_key=config.notion.api_key,
        api_version=config.notion.api_version,
        max_depth=config.notion.max_block_depth,
    )
    if not documents.is_configured:
        logger.warning("NOTION_API_KEY not set, FAQ pages cannot be read")
    cache = DocumentCache(documents.fetch_content, ttl_seconds=config.notion.cache_ttl_seconds)

    # Initialize LLM oracle
    oracle = Oracle(LLMClient.from_config(config.llm))
    if oracle.is_available:
        logger.info("LLM oracle ready (%s)", config.llm.provider)
    else:
        logger.warning("LLM oracle not available, questions will not be answered")

    # Initialize Slack
    messaging = SlackMessaging(token=config.slack.bot_token)
    bot_user_id = await messaging.identify() if config.slack.bot_token else None
    watch = await _resolve_watch_channels(messaging, config.slack.watch_channels)
    if watch is not None:
        logger.info("Watching %d channel(s): %s", len(watch), ", ".join(sorted(watch.values())))

    slack_handler = SlackEventHandler(signing_secret=config.slack.signing_secret)

    # Initialize lifecycle handlers
    router = ChannelRouter(
        escalations, answers, directory, cache, messaging, oracle,
        timing=timing, watch_channels=watch, bot_user_id=bot_user_id,
    )
    conversations = ConversationHandler(pending, ledger, directory, documents, cache, messaging, oracle)
    job = SynthesisJob(
        escalations, answers, pending, directory, documents, cache, messaging, oracle,
        timing=timing, features=config.features, channel_names=watch or {},
    )

    sweep_task = asyncio.create_task(job.run_forever())
    logger.info(
        "Sweep scheduled every %ds (first run in %ds)",
        timing.check_interval_seconds, timing.initial_check_delay_seconds,
    )
    logger.info("Ready to receive events")

    yield

    # Cleanup
    logger.info("Shutting down...")
    if sweep_task:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
        sweep_task = None
    await documents.close()


app = FastAPI(
    title="Knowledge Bot",
    description="FAQ answers, escalations and corrections over Slack and Notion",
    version="0.1.0",
    lifespan=lifespan,
)


# =============================================================================
# Background Tasks
# =============================================================================

async def process_message(message: Message):
    """Route a parsed message to the DM conversation or the channel router."""
    if not router or not conversations:
        logger.warning("Not initialized, skipping message")
        return

    try:
        if message.is_direct:
            await conversations.handle_direct_message(message)
        else:
            outcome = await router.handle_channel_message(message)
            logger.debug("Message %s: %s", message.timestamp, outcome)
    except Exception:
        logger.exception("Failed to process message %s in %s", message.timestamp, message.channel)


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "kbot",
        "initialized": router is not None,
        "llm_available": oracle.is_available if oracle else False,
        "notion_configured": documents.is_configured if documents else False,
        "sweep_running": bool(sweep_task and not sweep_task.done()),
    }


@app.post("/slack/events")
async def slack_events(
    request: Request,
    background_tasks: BackgroundTasks,
    x_slack_signature: Optional[str] = Header(None),
    x_slack_request_timestamp: Optional[str] = Header(None)
):
    """
    Handle Slack webhook events.

    This is the main entry point for Slack integration.
    """
    if not slack_handler:
        raise HTTPException(status_code=503, detail="Handler not initialized")

    # Read body
    body = await request.body()

    # Verify signature
    if not slack_handler.verify_signature(
        body,
        x_slack_signature or "",
        x_slack_request_timestamp or ""
    ):
        raise HTTPException(status_code=401, detail="Invalid signature")

    # Parse JSON
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    # Handle URL verification challenge
    if slack_handler.is_url_verification(data):
        challenge = slack_handler.get_challenge(data)
        return JSONResponse({"challenge": challenge})

    # Parse event to message
    message = await slack_handler.parse_event(data)

    if message and slack_handler.should_process(message):
        # Process in background (don't block response)
        background_tasks.add_task(process_message, message)

    # Acknowledge receipt
    return JSONResponse({"ok": True})


@app.get("/stats")
async def get_stats():
    """Get lifecycle statistics"""
    stats = {
        "service": "kbot",
        "timestamp": utc_now().isoformat(),
    }

    if escalations:
        stats["escalations"] = escalations.get_stats()
    if answers:
        stats["tracked_answers"] = answers.get_stats()
    if pending:
        stats["pending_actions"] = pending.count()
    if directory:
        stats["knowledge_areas"] = len(directory.all())

    return stats


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the Knowledge Bot server"""
    import uvicorn

    config = load_config()
    port = config.slack.port

    logger.info("Starting server on port %d", port)
    uvicorn.run(
        "kbot.server:app",
        host="0.0.0.0",
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
