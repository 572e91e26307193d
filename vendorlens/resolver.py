"""Vendor name resolution engine.

Resolution of a single vendor string runs strictly in this order:

1. Normalize the raw text into a lookup key
2. Look the key up in the mapping store (user override first, then global)
3. On a miss, ask the external oracle (the only slow, fallible step)
4. Persist the oracle's answer as a global mapping

Concurrent misses for the same key may both reach the oracle. The store's
unique constraint on (key, owner scope) decides the winner; the loser re-reads
the stored row instead of failing.
"""

import asyncio
import logging
import os
from collections import Counter
from dataclasses import dataclass
from typing import Protocol

from .ai import ORACLE_TIMEOUT, OracleCandidate
from .confidence import (
    USER_CONFIDENCE,
    MergeDecision,
    ResolutionSource,
    clamp,
    classify,
    merge,
)
from .errors import Conflict, PersistenceError, ResolutionFailed, ValidationError, VendorError
from .models import VendorMapping
from .normalize import MAX_NAME_LENGTH, clean_mapped_name, normalize_vendor_text
from .query import MappingCreate, MappingPatch
from .schemas import (
    BulkResolution,
    FailedResolution,
    GroundingSource,
    ResolutionResult,
    ResolveRequest,
)

logger = logging.getLogger(__name__)

MIN_PERSIST_CONFIDENCE = float(os.getenv("VENDOR_MIN_PERSIST_CONFIDENCE", "0"))
BULK_THROTTLE = float(os.getenv("VENDOR_BULK_THROTTLE", "0.1"))

CONSENSUS_MIN_USERS = 3
CONSENSUS_CONFIDENCE = 0.85


class MappingStore(Protocol):
    async def find_mapping(
        self, normalized_text: str, user_id: int | None
    ) -> VendorMapping | None: ...

    async def find_owned(
        self, normalized_text: str, user_id: int
    ) -> VendorMapping | None: ...

    async def find_global(self, normalized_text: str) -> VendorMapping | None: ...

    async def list_user_mappings(self, normalized_text: str) -> list[VendorMapping]: ...

    async def create_mapping(self, data: MappingCreate) -> VendorMapping: ...

    async def update_mapping(
        self, mapping_id: str, patch: MappingPatch, user_id: int
    ) -> VendorMapping: ...

    async def replace_global(
        self, mapping: VendorMapping, mapped_name: str, confidence: float, source: str
    ) -> VendorMapping: ...


class Oracle(Protocol):
    def resolve(self, vendor_text: str, context: dict | None = None) -> OracleCandidate: ...


@dataclass
class ResolutionOutcome:
    result: ResolutionResult
    cache_hit: bool


class VendorResolver:
    def __init__(
        self,
        store: MappingStore,
        oracle: Oracle,
        timeout: float = ORACLE_TIMEOUT,
        min_persist_confidence: float = MIN_PERSIST_CONFIDENCE,
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.timeout = timeout
        self.min_persist_confidence = min_persist_confidence

    @staticmethod
    def _from_mapping(original_text: str, mapping: VendorMapping) -> ResolutionResult:
        owner = "global" if mapping.user_id is None else "user"
        return ResolutionResult(
            original_text=original_text,
            resolved_name=mapping.mapped_name,
            confidence=mapping.confidence,
            source=mapping.source,
            reasoning=f"Found in {owner} vendor mapping cache",
        )

    async def _ask_oracle(self, key: str, context: dict | None) -> OracleCandidate:
        try:
            candidate = await asyncio.wait_for(
                asyncio.to_thread(self.oracle.resolve, key, context),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Vendor oracle timed out after %.1fs", self.timeout)
            raise ResolutionFailed("Vendor resolution timed out") from None
        except Exception as e:
            logger.warning("Vendor oracle failed: %s", e)
            raise ResolutionFailed("Vendor resolution service unavailable") from e

        name = clean_mapped_name(candidate.name)
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ResolutionFailed("Vendor could not be identified")
        candidate.name = name
        return candidate

    async def resolve(
        self,
        original_text: str,
        user_id: int | None = None,
        context: dict | None = None,
    ) -> ResolutionOutcome:
        key = normalize_vendor_text(original_text)

        existing = await self.store.find_mapping(key, user_id)
        if existing is not None:
            logger.info(
                "Vendor cache hit (len=%d, source=%s)", len(original_text), existing.source
            )
            return ResolutionOutcome(self._from_mapping(original_text, existing), True)

        logger.info("Vendor cache miss (len=%d), asking oracle", len(original_text))
        candidate = await self._ask_oracle(key, context)
        result = ResolutionResult(
            original_text=original_text,
            resolved_name=candidate.name,
            confidence=clamp(candidate.confidence),
            source=candidate.source,
            sources=[GroundingSource(**s) for s in candidate.sources],
            reasoning=candidate.reasoning,
        )

        if result.confidence < self.min_persist_confidence:
            logger.info(
                "Not persisting %s-confidence suggestion (%.2f)",
                classify(result.confidence).value,
                result.confidence,
            )
            return ResolutionOutcome(result, False)

        try:
            await self.store.create_mapping(
                MappingCreate(
                    original_text=key,
                    mapped_name=result.resolved_name,
                    confidence=result.confidence,
                    source=result.source,
                )
            )
        except PersistenceError:
            winner = await self.store.find_mapping(key, user_id)
            if winner is not None:
                logger.warning("Lost vendor mapping insert race, using stored row")
                return ResolutionOutcome(self._from_mapping(original_text, winner), True)
            logger.warning("Vendor mapping not persisted, returning unsaved result")
            return ResolutionOutcome(result, False)

        logger.info(
            "Persisted vendor mapping (source=%s, confidence=%.2f)",
            result.source,
            result.confidence,
        )
        return ResolutionOutcome(result, False)

    async def bulk_resolve(
        self, requests: list[ResolveRequest], user_id: int | None = None
    ) -> BulkResolution:
        bulk = BulkResolution()
        bulk.stats.total = len(requests)

        for request in requests:
            context = (
                request.context.model_dump(exclude_none=True) if request.context else None
            )
            try:
                outcome = await self.resolve(request.original_text, user_id, context)
            except VendorError as e:
                bulk.failed.append(
                    FailedResolution(original_text=request.original_text, error=e.message)
                )
                bulk.stats.failed += 1
                if isinstance(e, ResolutionFailed):
                    await asyncio.sleep(BULK_THROTTLE)
                continue

            bulk.resolved.append(outcome.result)
            bulk.stats.resolved += 1
            if outcome.cache_hit:
                bulk.stats.cached += 1
            else:
                bulk.stats.ai_resolved += 1
                await asyncio.sleep(BULK_THROTTLE)

        logger.info(
            "Bulk vendor resolution: %d total, %d cached, %d ai, %d failed",
            bulk.stats.total,
            bulk.stats.cached,
            bulk.stats.ai_resolved,
            bulk.stats.failed,
        )
        return bulk

    async def create_user_mapping(
        self, original_text: str, mapped_name: str, user_id: int
    ) -> VendorMapping:
        """Record an explicit user override; it always carries full confidence."""
        key = normalize_vendor_text(original_text)
        name = clean_mapped_name(mapped_name)
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValidationError("Mapped name must be 1-200 characters")

        if await self.store.find_owned(key, user_id) is not None:
            raise Conflict()
        try:
            mapping = await self.store.create_mapping(
                MappingCreate(
                    original_text=key,
                    mapped_name=name,
                    confidence=USER_CONFIDENCE,
                    source=ResolutionSource.USER.value,
                    user_id=user_id,
                )
            )
        except PersistenceError as e:
            raise Conflict() from e

        await self.promote_consensus(key)
        return mapping

    async def promote_consensus(self, key: str) -> VendorMapping | None:
        """Offer a global mapping once enough users agree on a name."""
        user_rows = await self.store.list_user_mappings(key)
        votes: Counter[str] = Counter()
        spelling: dict[str, str] = {}
        voters: dict[str, set[int]] = {}
        for row in user_rows:
            name = clean_mapped_name(row.mapped_name)
            folded = name.casefold()
            spelling.setdefault(folded, name)
            voters.setdefault(folded, set()).add(row.user_id)
            votes[folded] = len(voters[folded])
        if not votes:
            return None

        folded, count = votes.most_common(1)[0]
        if count < CONSENSUS_MIN_USERS:
            return None

        candidate = ResolutionResult(
            original_text=key,
            resolved_name=spelling[folded],
            confidence=CONSENSUS_CONFIDENCE,
            source=ResolutionSource.LLM.value,
        )
        existing = await self.store.find_global(key)
        if existing is None:
            try:
                promoted = await self.store.create_mapping(
                    MappingCreate(
                        original_text=key,
                        mapped_name=candidate.resolved_name,
                        confidence=candidate.confidence,
                        source=candidate.source,
                    )
                )
            except PersistenceError:
                return await self.store.find_global(key)
            logger.info("Promoted user consensus to global mapping (%d users)", count)
            return promoted

        if merge(existing, candidate) is MergeDecision.USE_CANDIDATE:
            logger.info("Replacing global mapping with user consensus (%d users)", count)
            return await self.store.replace_global(
                existing, candidate.resolved_name, candidate.confidence, candidate.source
            )
        return existing
