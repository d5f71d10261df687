"""
Knowledge Directory

Knowledge areas ("domains"): which FAQ document answers which topic, and
who leads and owns it. Persisted to ``domains.json``; the reserved
``general-faq`` domain comes from configuration instead.
"""

import logging
import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..common.config import GENERAL_FAQ_ID, GeneralFaqConfig
from ..common.schemas.records import utc_now
from ..tracking.repository import JsonRecordRepository, RecordRepository

logger = logging.getLogger("kbot.knowledge.directory")


class KnowledgeDomain(BaseModel):
    """A knowledge area and the people responsible for it"""
    id: str
    name: str
    description: str = ""
    document_ref: str
    source_refs: List[str] = Field(default_factory=list)
    lead_user_ids: List[str] = Field(default_factory=list)
    member_user_ids: List[str] = Field(default_factory=list)
    member_descriptions: Dict[str, str] = Field(default_factory=dict)
    keywords: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def owner_user_ids(self) -> List[str]:
        """Leads first, then members, without duplicates"""
        seen = []
        for user_id in [*self.lead_user_ids, *self.member_user_ids]:
            if user_id not in seen:
                seen.append(user_id)
        return seen

    @property
    def is_general(self) -> bool:
        return self.id == GENERAL_FAQ_ID


class DirectoryError(ValueError):
    """Rejected directory change (duplicate name, missing fields)."""
    pass


def domain_id_for(name: str) -> str:
    """Slug of ``name`` plus a random suffix"""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "area"
    return f"{slug}-{secrets.token_hex(4)}"


class KnowledgeDirectory:
    """Lookup and registration of knowledge areas."""

    def __init__(
        self,
        repository: Optional[RecordRepository[KnowledgeDomain]] = None,
        path: Optional[Path] = None,
        general_faq: Optional[GeneralFaqConfig] = None,
    ):
        if repository is None:
            if path is None:
                raise ValueError("KnowledgeDirectory needs a repository or a path")
            repository = JsonRecordRepository(path, KnowledgeDomain)
        self._repo = repository
        self._general = general_faq or GeneralFaqConfig()

    @property
    def general_admin_ids(self) -> List[str]:
        return list(self._general.admin_user_ids)

    def general_domain(self) -> Optional[KnowledgeDomain]:
        if not self._general.enabled or not self._general.notion_page_id:
            return None
        return KnowledgeDomain(
            id=GENERAL_FAQ_ID,
            name="General",
            description="Questions that fit no specific knowledge area",
            document_ref=self._general.notion_page_id,
            source_refs=list(self._general.source_page_ids),
            lead_user_ids=list(self._general.admin_user_ids),
        )

    def resolve(self, domain_id: Optional[str]) -> Optional[KnowledgeDomain]:
        """Domain by id, including the configured general FAQ"""
        if not domain_id:
            return None
        if domain_id == GENERAL_FAQ_ID:
            return self.general_domain()
        return self._repo.get(domain_id)

    def all(self) -> List[KnowledgeDomain]:
        return sorted(self._repo.values(), key=lambda d: d.name.lower())

    def get_by_name(self, name: str) -> Optional[KnowledgeDomain]:
        wanted = (name or "").strip().lower()
        for domain in self._repo.values():
            if domain.name.lower() == wanted:
                return domain
        return None

    def add_domain(
        self,
        name: str,
        document_ref: str,
        lead_user_ids: Iterable[str] = (),
        description: str = "",
        keywords: Iterable[str] = (),
    ) -> KnowledgeDomain:
        """
        Register a knowledge area.

        Raises:
            DirectoryError: if name or document are missing, or the name is taken
        """
        name = (name or "").strip()
        if not name or not (document_ref or "").strip():
            raise DirectoryError("Name and document are required")
        if self.get_by_name(name):
            raise DirectoryError(f'Knowledge area "{name}" already exists')

        domain = KnowledgeDomain(
            id=domain_id_for(name),
            name=name,
            description=(description or "").strip(),
            document_ref=document_ref.strip(),
            lead_user_ids=list(dict.fromkeys(lead_user_ids or [])),
            keywords=[k.strip().lower() for k in keywords or [] if k and k.strip()],
        )
        self._repo.insert(domain)
        logger.info("Added knowledge area %r (%s, %d lead(s))", domain.name, domain.id, len(domain.lead_user_ids))
        return domain

    # =========================================================================
    # Roster
    # =========================================================================

    def _change_roster(self, domain_id: str, change: Callable[[KnowledgeDomain], bool]) -> bool:
        if domain_id == GENERAL_FAQ_ID:
            raise DirectoryError("The general FAQ roster comes from configuration")

        outcome = []
        updated = self._repo.compare_and_set(domain_id, lambda d: True, lambda d: outcome.append(change(d)))
        if updated is None:
            raise DirectoryError(f'Knowledge area "{domain_id}" not found')
        return outcome[0]

    def add_member(self, domain_id: str, user_id: str, description: str = "") -> bool:
        """
        Add a team member. Leads and existing members are left as they are.

        Returns:
            True if the user was added
        """
        def change(d: KnowledgeDomain) -> bool:
            if user_id in d.owner_user_ids:
                return False
            d.member_user_ids.append(user_id)
            if description.strip():
                d.member_descriptions[user_id] = description.strip()
            return True

        added = self._change_roster(domain_id, change)
        if added:
            logger.info("Added member %s to %s", user_id, domain_id)
        return added

    def remove_member(self, domain_id: str, user_id: str) -> bool:
        """Drop a user from leads and members alike."""
        def change(d: KnowledgeDomain) -> bool:
            before = len(d.lead_user_ids) + len(d.member_user_ids)
            d.lead_user_ids = [u for u in d.lead_user_ids if u != user_id]
            d.member_user_ids = [u for u in d.member_user_ids if u != user_id]
            d.member_descriptions.pop(user_id, None)
            return len(d.lead_user_ids) + len(d.member_user_ids) < before

        removed = self._change_roster(domain_id, change)
        if removed:
            logger.info("Removed %s from %s", user_id, domain_id)
        return removed

    def promote_to_lead(self, domain_id: str, user_id: str) -> bool:
        """
        Move a team member to the leads.

        Returns:
            False if the user already leads the area

        Raises:
            DirectoryError: if the user is not on the roster
        """
        def change(d: KnowledgeDomain) -> bool:
            if user_id in d.lead_user_ids:
                return False
            if user_id not in d.member_user_ids:
                raise DirectoryError(f"<@{user_id}> is not a team member of {d.name}")
            d.member_user_ids.remove(user_id)
            d.lead_user_ids.append(user_id)
            return True

        promoted = self._change_roster(domain_id, change)
        if promoted:
            logger.info("Promoted %s to lead of %s", user_id, domain_id)
        return promoted

    def demote_to_member(self, domain_id: str, user_id: str) -> bool:
        def change(d: KnowledgeDomain) -> bool:
            if user_id not in d.lead_user_ids:
                raise DirectoryError(f"<@{user_id}> is not a lead of {d.name}")
            d.lead_user_ids.remove(user_id)
            d.member_user_ids.append(user_id)
            return True

        demoted = self._change_roster(domain_id, change)
        logger.info("Demoted %s to member of %s", user_id, domain_id)
        return demoted

    def set_member_description(self, domain_id: str, user_id: str, description: str) -> bool:
        """Record what a lead or member knows about."""
        def change(d: KnowledgeDomain) -> bool:
            if user_id not in d.owner_user_ids:
                raise DirectoryError(f"<@{user_id}> is not on the {d.name} roster")
            d.member_descriptions[user_id] = description.strip()
            return True

        return self._change_roster(domain_id, change)

    def is_lead_for_any(self, user_id: str) -> bool:
        return any(user_id in d.lead_user_ids for d in self._repo.values())

    def is_owner(self, user_id: str, domain_id: str) -> bool:
        domain = self.resolve(domain_id)
        return bool(domain and user_id in domain.owner_user_ids)

    def responders_for(self, domain_id: str) -> List[str]:
        """Users whose thread replies count as authoritative for ``domain_id``"""
        if domain_id == GENERAL_FAQ_ID:
            return self.general_admin_ids
        domain = self.resolve(domain_id)
        return domain.owner_user_ids if domain else []
