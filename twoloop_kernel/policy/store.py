"""
Policy Store — versioned, tenant-scoped Guidelines and Criteria.

Behavioral Contract:
- Append-only versions. Content of a stored version is never edited.
- Exactly one ACTIVE version per tenant; promotion archives the prior
  ACTIVE version atomically with the promotion.
- Only DRAFT versions can be activated or rejected.
- Criteria accept drafts and promotions from human actors only. The
  Convergence Engine is handed a ReadOnlyPolicyView and never sees the
  mutating methods.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from twoloop_kernel.errors import ConflictError, NotFoundError, ValidationError
from twoloop_kernel.log import get_logger
from twoloop_kernel.models.policy import (
    Author,
    CriteriaContent,
    GuidelinesContent,
    PolicyDiff,
    PolicyKind,
    PolicyVersion,
    VersionStatus,
)
from twoloop_kernel.policy.diff import compare_versions, validate_guidelines

logger = get_logger("policy")

HUMAN_AUTHORS = (Author.TELEOPERATOR,)


class VersionedPolicyStore:
    """
    In-memory versioned document store.
    Production deployments back this with a database; every method is a
    suspension point so callers are written against that shape.
    """

    kind: PolicyKind = PolicyKind.GUIDELINES
    content_model = GuidelinesContent

    def __init__(self):
        self._versions: Dict[str, PolicyVersion] = {}
        self._by_tenant: Dict[str, List[str]] = {}
        self._lock = asyncio.Lock()

    # --- Reads ---

    async def get_active_or_none(self, tenant_id: str) -> Optional[PolicyVersion]:
        for version_id in reversed(self._by_tenant.get(tenant_id, [])):
            version = self._versions[version_id]
            if version.status == VersionStatus.ACTIVE:
                return version.model_copy(deep=True)
        return None

    async def get_active(self, tenant_id: str) -> PolicyVersion:
        version = await self.get_active_or_none(tenant_id)
        if version is None:
            raise NotFoundError(f"No active {self.kind.value} for tenant {tenant_id}")
        return version

    async def get_by_id(self, version_id: str) -> PolicyVersion:
        version = self._versions.get(version_id)
        if version is None:
            raise NotFoundError(f"{self.kind.value} version {version_id} not found")
        return version.model_copy(deep=True)

    async def get_version(self, tenant_id: str, version: int) -> PolicyVersion:
        for version_id in self._by_tenant.get(tenant_id, []):
            record = self._versions[version_id]
            if record.version == version:
                return record.model_copy(deep=True)
        raise NotFoundError(
            f"{self.kind.value} version {version} not found for tenant {tenant_id}"
        )

    async def list_versions(self, tenant_id: str) -> List[PolicyVersion]:
        """All versions for a tenant, newest first."""
        return [
            self._versions[v].model_copy(deep=True)
            for v in reversed(self._by_tenant.get(tenant_id, []))
        ]

    async def get_pending_drafts(self, tenant_id: str) -> List[PolicyVersion]:
        return [
            v for v in await self.list_versions(tenant_id)
            if v.status == VersionStatus.DRAFT
        ]

    async def compare(self, tenant_id: str, from_version: int, to_version: int) -> PolicyDiff:
        old = await self.get_version(tenant_id, from_version)
        new = await self.get_version(tenant_id, to_version)
        return compare_versions(old, new)

    # --- Writes ---

    async def create_draft(
        self,
        tenant_id: str,
        content: Union[Dict[str, Any], BaseModel],
        author: Author,
        changelog: str = "",
    ) -> str:
        """Store a new DRAFT version and return its id."""
        self._check_author(author)
        return await self._store_draft(tenant_id, content, author, changelog)

    async def _store_draft(
        self,
        tenant_id: str,
        content: Union[Dict[str, Any], BaseModel],
        author: Author,
        changelog: str,
    ) -> str:
        document = self._validate_content(content)

        async with self._lock:
            existing = self._by_tenant.setdefault(tenant_id, [])
            active = next(
                (
                    self._versions[v] for v in existing
                    if self._versions[v].status == VersionStatus.ACTIVE
                ),
                None,
            )
            record = PolicyVersion(
                id=f"{self.kind.value[:3]}_{uuid4().hex[:12]}",
                tenant_id=tenant_id,
                kind=self.kind,
                version=len(existing) + 1,
                status=VersionStatus.DRAFT,
                content=document,
                created_by=author,
                changelog=changelog,
                parent_version=active.version if active else None,
                created_at=datetime.utcnow(),
            )
            self._versions[record.id] = record
            existing.append(record.id)

        logger.info(
            "policy draft created",
            extra={"structured": {
                "kind": self.kind.value,
                "tenant_id": tenant_id,
                "version_id": record.id,
                "version": record.version,
                "author": author.value,
            }},
        )
        return record.id

    async def activate(
        self,
        version_id: str,
        actor: Author = Author.TELEOPERATOR,
        expected_active_version: Optional[int] = None,
    ) -> PolicyVersion:
        """
        Promote a DRAFT to ACTIVE and archive the previous ACTIVE version.

        When ``expected_active_version`` is given the promotion only
        succeeds if that version is still the ACTIVE one.
        """
        self._check_author(actor)
        return await self._promote(version_id, actor, expected_active_version)

    async def _promote(
        self,
        version_id: str,
        actor: Author,
        expected_active_version: Optional[int],
    ) -> PolicyVersion:
        async with self._lock:
            record = self._versions.get(version_id)
            if record is None:
                raise NotFoundError(f"{self.kind.value} version {version_id} not found")
            if record.status != VersionStatus.DRAFT:
                raise ValidationError(
                    f"Cannot activate {self.kind.value} version {record.version}: "
                    f"status is {record.status.value}, not DRAFT"
                )

            current = next(
                (
                    self._versions[v] for v in self._by_tenant[record.tenant_id]
                    if self._versions[v].status == VersionStatus.ACTIVE
                ),
                None,
            )
            current_version = current.version if current else None
            if expected_active_version is not None and current_version != expected_active_version:
                raise ConflictError(
                    f"Active {self.kind.value} for tenant {record.tenant_id} is "
                    f"version {current_version}, expected {expected_active_version}"
                )

            if current is not None:
                current.status = VersionStatus.ARCHIVED
            record.status = VersionStatus.ACTIVE
            record.activated_at = datetime.utcnow()
            record.activated_by = actor
            promoted = record.model_copy(deep=True)

        logger.info(
            "policy version activated",
            extra={"structured": {
                "kind": self.kind.value,
                "tenant_id": promoted.tenant_id,
                "version": promoted.version,
                "archived_version": current_version,
                "actor": actor.value,
            }},
        )
        return promoted

    async def reject(
        self,
        version_id: str,
        actor: Author = Author.TELEOPERATOR,
        reason: str = "",
    ) -> PolicyVersion:
        self._check_author(actor)

        async with self._lock:
            record = self._versions.get(version_id)
            if record is None:
                raise NotFoundError(f"{self.kind.value} version {version_id} not found")
            if record.status != VersionStatus.DRAFT:
                raise ValidationError(
                    f"Cannot reject {self.kind.value} version {record.version}: "
                    f"status is {record.status.value}, not DRAFT"
                )
            record.status = VersionStatus.REJECTED
            record.rejection_reason = reason or None
            rejected = record.model_copy(deep=True)

        logger.info(
            "policy version rejected",
            extra={"structured": {
                "kind": self.kind.value,
                "tenant_id": rejected.tenant_id,
                "version": rejected.version,
                "reason": reason,
            }},
        )
        return rejected

    async def bootstrap(
        self,
        tenant_id: str,
        content: Union[Dict[str, Any], BaseModel],
        changelog: str = "Initial version",
    ) -> PolicyVersion:
        """
        Create and activate a tenant's first version as SYSTEM.

        Skips the author check: provisioning is the only SYSTEM write path.
        """
        version_id = await self._store_draft(tenant_id, content, Author.SYSTEM, changelog)
        return await self._promote(version_id, Author.SYSTEM, None)

    # --- Hooks ---

    def _check_author(self, author: Author) -> None:
        pass

    def _validate_content(self, content: Union[Dict[str, Any], BaseModel]) -> Dict[str, Any]:
        raw = content.model_dump(mode="json") if isinstance(content, BaseModel) else content
        try:
            parsed = self.content_model.model_validate(raw)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid {self.kind.value} content: {e}") from e
        return parsed.model_dump(mode="json")


class GuidelinesStore(VersionedPolicyStore):
    """Guidelines — writable by the agent (as drafts) and by humans."""

    kind = PolicyKind.GUIDELINES
    content_model = GuidelinesContent

    def _validate_content(self, content):
        document = super()._validate_content(content)
        report = validate_guidelines(GuidelinesContent.model_validate(document))
        if not report.valid:
            raise ValidationError("Invalid guidelines: " + "; ".join(report.errors))
        for warning in report.warnings:
            logger.warning("guidelines validation warning", extra={"structured": {"warning": warning}})
        return document


class CriteriaStore(VersionedPolicyStore):
    """Criteria — every mutation must come from a human actor."""

    kind = PolicyKind.CRITERIA
    content_model = CriteriaContent

    def _check_author(self, author: Author) -> None:
        if author not in HUMAN_AUTHORS:
            raise ValidationError(
                f"Criteria can only be changed by a human actor, not {author.value}"
            )


class ReadOnlyPolicyView:
    """Read access to a policy store without any mutating method."""

    def __init__(self, store: VersionedPolicyStore):
        self._store = store
        self.kind = store.kind

    async def get_active(self, tenant_id: str) -> PolicyVersion:
        return await self._store.get_active(tenant_id)

    async def get_active_or_none(self, tenant_id: str) -> Optional[PolicyVersion]:
        return await self._store.get_active_or_none(tenant_id)

    async def get_version(self, tenant_id: str, version: int) -> PolicyVersion:
        return await self._store.get_version(tenant_id, version)

    async def get_by_id(self, version_id: str) -> PolicyVersion:
        return await self._store.get_by_id(version_id)

    async def list_versions(self, tenant_id: str) -> List[PolicyVersion]:
        return await self._store.list_versions(tenant_id)
