"""
Deduplication stage.

Records sharing a fingerprint (SHA-256 over the key canonical fields) are
collapsed to one. The survivor is the most recently ingested record; equal
ingestion times fall back to the greater content hash so the outcome never
depends on input order. The loader applies the same rule when a record
collides with one persisted by an earlier run.
"""

from typing import Dict, List, Sequence, Tuple
import hashlib
import json
import logging

from pydantic import BaseModel

from schemas.normalized import EnrichedRecordCreate

logger = logging.getLogger(__name__)

KEY_FIELDS = ("entity", "external_id")


def fingerprint(record: EnrichedRecordCreate) -> str:
    key = [str(getattr(record, field)) for field in KEY_FIELDS]
    return hashlib.sha256(json.dumps(key, ensure_ascii=False).encode("utf-8")).hexdigest()


def supersedes(candidate: EnrichedRecordCreate, current: EnrichedRecordCreate) -> bool:
    """True when `candidate` should replace `current` under the tie-break policy."""
    return (candidate.ingested_at, candidate.content_hash) > (current.ingested_at, current.content_hash)


class DuplicateGroup(BaseModel):
    """Read-only report of one collapsed fingerprint"""
    fingerprint: str
    kept_content_hash: str
    member_content_hashes: Tuple[str, ...]

    class Config:
        frozen = True


class DedupeResult(BaseModel):
    records: List[EnrichedRecordCreate]
    groups: List[DuplicateGroup]

    @property
    def duplicates_collapsed(self) -> int:
        return sum(len(group.member_content_hashes) - 1 for group in self.groups)

    def fingerprints(self) -> List[str]:
        return [fingerprint(record) for record in self.records]


class Deduplicator:
    def dedupe(self, records: Sequence[EnrichedRecordCreate]) -> DedupeResult:
        winners: Dict[str, EnrichedRecordCreate] = {}
        members: Dict[str, List[str]] = {}

        # dicts keep first-appearance order of each fingerprint
        for record in records:
            key = fingerprint(record)
            current = winners.get(key)
            if current is None:
                winners[key] = record
                members[key] = [record.content_hash]
                continue
            members[key].append(record.content_hash)
            if supersedes(record, current):
                winners[key] = record

        groups = [
            DuplicateGroup(
                fingerprint=key,
                kept_content_hash=winners[key].content_hash,
                member_content_hashes=tuple(hashes),
            )
            for key, hashes in members.items()
            if len(hashes) > 1
        ]

        result = DedupeResult(records=list(winners.values()), groups=groups)
        if groups:
            logger.info(
                f"Collapsed {result.duplicates_collapsed} duplicate(s) across {len(groups)} fingerprint(s)"
            )
        return result


def dedupe(records: Sequence[EnrichedRecordCreate]) -> DedupeResult:
    return Deduplicator().dedupe(records)
