"""Slack mrkdwn texts posted by the lifecycle."""

from typing import Iterable, List, Optional

from ..common.llm_utils import clip
from ..common.schemas.oracle import AnswerResult

ALREADY_APPLIED = "This FAQ update was already applied by another lead, no action needed!"
CANNOT_AUTO_APPLY = (
    "I couldn't locate the specific FAQ block in Notion, so I can't update it automatically. "
    "You'll need to edit it manually. Sorry about that!"
)
REJECTED = "Got it, I won't update the FAQ."
REVISION_FAILED = "I couldn't generate a revision from that feedback. Could you try rephrasing?"
GENERIC_APOLOGY = "Sorry, I hit an error processing your message. Please try again!"
NOT_PUBLISHED = (
    "Thanks for the responses! I've noted this but it doesn't seem like a common enough "
    "question to add to the FAQ."
)
ADD_DOMAIN_CANCELLED = "No problem, cancelled!"
ADD_DOMAIN_NEEDS_URL = 'I need a Notion page URL to create this knowledge area. Paste the URL, or say "cancel" to abort.'
ADD_DOMAIN_BAD_URL = 'That doesn\'t look like a valid Notion page URL. Could you paste the full URL? Or say "cancel" to abort.'
ADD_DOMAIN_LEADS_ONLY = "Only knowledge area leads can add new knowledge areas."
ADD_DOMAIN_NEEDS_NAME = "I need at least a name for the new knowledge area. What should it be called?"
HELP_TEXT = (
    "Here's what I can do via DM:\n"
    '• *Show the roster*: "Show me the knowledge areas"\n'
    '• *Join a team*: tell me about your role and expertise\n'
    '• *Add/remove team members* (leads only): "Add @person to Billing"\n'
    '• *Promote/demote* (leads only): "Promote @person to lead for Billing"\n'
    '• *Add a knowledge area* (leads only): "Create a knowledge area called Platform"\n\n'
    "Just ask naturally!"
)
ROSTER_LEADS_ONLY = (
    "Only leads of a knowledge area can change its roster. "
    "You can join a team yourself by telling me about your role and expertise!"
)
ROSTER_NEEDS_AREA = "I couldn't figure out which knowledge area you mean. Could you give me its name?"
ROSTER_NEEDS_USERS = "I couldn't tell who you mean. Mention them with @ and try again."
SELF_REGISTER_NO_MATCH = (
    "I wasn't able to match your expertise to a knowledge area. "
    "Could you be more specific about which area you work on?"
)


def pings(user_ids: Iterable[str]) -> str:
    ids = list(user_ids)
    return " ".join(f"<@{u}>" for u in ids) if ids else "(no owners configured for this area)"


def _faq_phrase(domain_name: str, url: Optional[str]) -> str:
    return f"<{url}|*{domain_name} FAQ*>" if url else f"*{domain_name} FAQ*"


def format_answer(result: AnswerResult) -> str:
    lines = [result.text.strip()]
    if result.followups:
        lines += ["", "*If you want to sanity-check, I'd ask:*"]
        lines += [f"• {q}" for q in result.followups]
    return "\n".join(lines)


def format_partial_answer(result: AnswerResult, domain_name: str, owners: List[str], url: Optional[str]) -> str:
    lines = [result.text.strip(), ""]
    lines.append(f"{pings(owners)} The {_faq_phrase(domain_name, url)} only partially covers this. Mind filling in the gaps?")
    if result.followups:
        lines.append("")
        lines += [f"• {q}" for q in result.followups]
    lines += ["", "_Once you respond, I'll update the FAQ shortly after._"]
    return "\n".join(lines)


def format_escalation(question: str, followups: List[str], owners: List[str], domain_name: str, url: Optional[str]) -> str:
    lines = [
        f"{pings(owners)} I couldn't find this in the {_faq_phrase(domain_name, url)} yet. Mind weighing in?",
        "",
        f"> {clip(question, 1200)}",
    ]
    if followups:
        lines += ["", "*Helpful details to include:*"]
        lines += [f"• {q}" for q in followups]
    lines += ["", "_Once you respond, I'll add it to the FAQ shortly after._"]
    return "\n".join(lines)


def format_published(question: str, url: str, domain_name: str, owners: List[str], general: bool) -> str:
    if general:
        return f"I've added this to the *General FAQ*:\n\n*Q:* {question}\n\n<{url}|View in Notion>"
    return (
        f"{pings(owners)} Thanks for the responses! I've updated the *{domain_name} FAQ* with a new entry:"
        f"\n\n*Q:* {question}\n\n<{url}|View in Notion>"
    )


def format_correction_request(
    domain_name: str,
    channel_name: Optional[str],
    proposed_text: str,
    block_url: Optional[str],
    page_url: Optional[str],
) -> str:
    lines = [
        f"A correction was flagged for the *{domain_name}* FAQ based on a discussion in #{channel_name or 'channel'}.",
        "",
    ]
    if block_url:
        lines.append(f"FAQ entry: <{block_url}|View in Notion>")
    else:
        if page_url:
            lines.append(f"FAQ page: <{page_url}|View in Notion>")
        lines.append("_I couldn't pinpoint the exact entry, so this one can't be applied automatically._")
    lines += [
        "",
        "*Suggested update:*",
        proposed_text,
        "",
        "Should I go ahead and update this FAQ entry? Reply *yes* to approve, or tell me what to change.",
    ]
    return "\n".join(lines)


def format_revision(text: str) -> str:
    return (
        f"Here's the revised version:\n\n{text}\n\n"
        "Should I go ahead with this? Reply *yes* to approve, or tell me what else to change."
    )


def format_applied(domain_name: str, url: str) -> str:
    return f"Done! I've updated the *{domain_name}* FAQ entry.\n\n<{url}|View in Notion>"


def format_apply_failed(error: Exception) -> str:
    return (
        f"I ran into an error updating the FAQ in Notion: {error}. "
        "Reply *yes* to try again, or edit it manually."
    )


def audit_note(question: str) -> str:
    return f"Updated by bot based on correction from a Slack thread.\nOriginal question: {question}"


def format_domain_created(domain) -> str:
    leads = ", ".join(f"<@{u}>" for u in domain.lead_user_ids) or "_No leads set yet_"
    text = f"Done! Created knowledge area *{domain.name}* (ID: `{domain.id}`)\nLeads: {leads}"
    if domain.description:
        text += f"\n_{domain.description}_"
    if domain.keywords:
        text += f"\nKeywords: {', '.join(domain.keywords)}"
    return text


def _roster_names(user_ids: Iterable[str], descriptions: dict) -> str:
    names = []
    for u in user_ids:
        names.append(f"<@{u}> ({descriptions[u]})" if descriptions.get(u) else f"<@{u}>")
    return ", ".join(names) or "_none_"


def format_roster(domains: Iterable) -> str:
    blocks = []
    for d in domains:
        leads = _roster_names(d.lead_user_ids, d.member_descriptions)
        members = _roster_names(d.member_user_ids, d.member_descriptions)
        block = f"*{d.name}* (`{d.id}`)\nLeads: {leads}\nTeam: {members}"
        if d.description:
            block += f"\n_{d.description}_"
        blocks.append(block)
    return "\n\n———\n\n".join(blocks) if blocks else "No knowledge areas configured yet."


def format_roster_change(action: str, user_id: str, domain_name: str, changed: bool, description: str = "") -> str:
    who, area = f"<@{user_id}>", f"*{domain_name}*"
    if action == "add_member":
        if not changed:
            return f"{who} is already on {area}"
        return f"Added {who} to {area}" + (f" _({description})_" if description else "")
    if action == "remove_member":
        return f"Removed {who} from {area}" if changed else f"{who} wasn't a member of {area}"
    if action == "promote":
        return f"Promoted {who} to lead for {area}" if changed else f"{who} already leads {area}"
    if action == "demote":
        return f"Demoted {who} from lead to team member on {area}"
    if action == "update_description":
        return f"Updated {who}'s description on {area} to: _{description}_"
    return f"I didn't understand what to change for {who}."


def format_self_registration(joined: List[str], updated: List[str]) -> str:
    lines = []
    if joined:
        lines.append("You're now listed on " + ", ".join(f"*{n}*" for n in joined) + ".")
    if updated:
        lines.append("Updated your expertise on " + ", ".join(f"*{n}*" for n in updated) + ".")
    lines.append("I'll loop you in when questions come up there.")
    return "\n".join(lines)
