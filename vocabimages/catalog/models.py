"""Vocabulary items, image candidates and collection progress."""

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional

ERROR_LOG_LIMIT = 10


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class CandidateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual_review"


class ProgressStatus(str, Enum):
    PENDING = "pending"
    COLLECTING = "collecting"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemKey(NamedTuple):
    """Natural key of an item: category, letter and item id."""
    category_id: str
    letter: str
    item_id: str

    def __str__(self) -> str:
        return f"{self.category_id}/{self.letter}/{self.item_id}"


@dataclass(frozen=True)
class QualityScore:
    """Weighted quality assessment of one image, every component in [0, 10]."""
    overall: float
    technical: float
    relevance: float
    aesthetic: float
    usability: float
    weights: dict[str, float]
    details: dict[str, Any] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)
    analyzed_at: datetime = field(default_factory=utcnow)

    @property
    def breakdown(self) -> dict[str, float]:
        return {
            "technical": self.technical,
            "relevance": self.relevance,
            "aesthetic": self.aesthetic,
            "usability": self.usability,
        }

    def to_dict(self) -> dict:
        data = asdict(self)
        data["analyzed_at"] = _iso(self.analyzed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "QualityScore":
        data = dict(data)
        data["analyzed_at"] = _parse(data.get("analyzed_at")) or utcnow()
        return cls(**data)


@dataclass
class LicenseInfo:
    """Usage terms attached to a candidate by its source."""
    type: str = "unknown"
    attribution: Optional[str] = None
    commercial: bool = False
    url: Optional[str] = None


@dataclass
class StoredFile:
    """One persisted derivative of a candidate."""
    key: str
    url: str
    width: int
    height: int
    size_bytes: int
    format: str
    etag: Optional[str] = None


@dataclass
class ImageCandidate:
    """A sourced or generated image attached to an item."""
    source_provider: str
    source_id: str
    source_url: Optional[str]
    width: int
    height: int
    size_bytes: int
    format: str
    status: CandidateStatus = CandidateStatus.PENDING
    quality_score: Optional[QualityScore] = None
    files: dict[str, StoredFile] = field(default_factory=dict)
    is_primary: bool = False
    license: LicenseInfo = field(default_factory=LicenseInfo)
    search_term: Optional[str] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    candidate_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    approved_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.status == CandidateStatus.APPROVED

    @property
    def source_key(self) -> tuple[str, str]:
        return (self.source_provider, self.source_id)

    def rescored(self, score: QualityScore) -> "ImageCandidate":
        """Return a copy carrying a fresh score; the prior score is left untouched."""
        return replace(self, quality_score=score, updated_at=utcnow())

    def to_dict(self) -> dict:
        return {
            "candidate_id": self.candidate_id,
            "source_provider": self.source_provider,
            "source_id": self.source_id,
            "source_url": self.source_url,
            "width": self.width,
            "height": self.height,
            "size_bytes": self.size_bytes,
            "format": self.format,
            "status": self.status.value,
            "quality_score": self.quality_score.to_dict() if self.quality_score else None,
            "files": {name: asdict(f) for name, f in self.files.items()},
            "is_primary": self.is_primary,
            "license": asdict(self.license),
            "search_term": self.search_term,
            "review_notes": self.review_notes,
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "approved_at": _iso(self.approved_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImageCandidate":
        score = data.get("quality_score")
        return cls(
            candidate_id=data["candidate_id"],
            source_provider=data["source_provider"],
            source_id=data["source_id"],
            source_url=data.get("source_url"),
            width=data.get("width", 0),
            height=data.get("height", 0),
            size_bytes=data.get("size_bytes", 0),
            format=data.get("format", ""),
            status=CandidateStatus(data.get("status", "pending")),
            quality_score=QualityScore.from_dict(score) if score else None,
            files={name: StoredFile(**f) for name, f in data.get("files", {}).items()},
            is_primary=data.get("is_primary", False),
            license=LicenseInfo(**data.get("license", {})),
            search_term=data.get("search_term"),
            review_notes=data.get("review_notes"),
            rejection_reason=data.get("rejection_reason"),
            created_at=_parse(data.get("created_at")) or utcnow(),
            updated_at=_parse(data.get("updated_at")) or utcnow(),
            approved_at=_parse(data.get("approved_at")),
        )


@dataclass
class SourceStats:
    """Per-source counters for one item."""
    found: int = 0
    approved: int = 0
    errors: int = 0
    last_searched: Optional[datetime] = None


@dataclass
class ErrorEntry:
    timestamp: datetime
    source: str
    message: str
    details: Optional[str] = None


@dataclass
class CollectionProgress:
    """Collection state for one item, created on its first collection attempt."""
    target_count: int
    status: ProgressStatus = ProgressStatus.PENDING
    collected_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    manual_review_count: int = 0
    search_attempts: int = 0
    last_search_terms: list[str] = field(default_factory=list)
    sources: dict[str, SourceStats] = field(default_factory=dict)
    errors: list[ErrorEntry] = field(default_factory=list)
    average_quality_score: Optional[float] = None
    best_quality_score: Optional[float] = None
    started_at: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    next_attempt: Optional[datetime] = None

    def add_error(self, source: str, message: str, details: Optional[str] = None, limit: int = ERROR_LOG_LIMIT):
        """Append an error entry, keeping only the most recent ``limit``."""
        self.errors.append(ErrorEntry(timestamp=utcnow(), source=source, message=message, details=details))
        if len(self.errors) > limit:
            del self.errors[: len(self.errors) - limit]
        if source in self.sources:
            self.sources[source].errors += 1

    def source_stats(self, source: str) -> SourceStats:
        if source not in self.sources:
            self.sources[source] = SourceStats()
        return self.sources[source]

    def recompute(self, candidates: list[ImageCandidate]) -> None:
        """Derive counters and quality aggregates from the candidate list."""
        approved = [c for c in candidates if c.status == CandidateStatus.APPROVED]
        self.collected_count = len(candidates)
        self.approved_count = len(approved)
        self.rejected_count = sum(1 for c in candidates if c.status == CandidateStatus.REJECTED)
        self.manual_review_count = sum(1 for c in candidates if c.status == CandidateStatus.MANUAL_REVIEW)

        scores = [c.quality_score.overall for c in approved if c.quality_score is not None]
        if scores:
            self.average_quality_score = round(sum(scores) / len(scores), 2)
            self.best_quality_score = max(scores)
        else:
            self.average_quality_score = None
            self.best_quality_score = None

    def to_dict(self) -> dict:
        return {
            "target_count": self.target_count,
            "status": self.status.value,
            "collected_count": self.collected_count,
            "approved_count": self.approved_count,
            "rejected_count": self.rejected_count,
            "manual_review_count": self.manual_review_count,
            "search_attempts": self.search_attempts,
            "last_search_terms": list(self.last_search_terms),
            "sources": {
                name: {**asdict(stats), "last_searched": _iso(stats.last_searched)}
                for name, stats in self.sources.items()
            },
            "errors": [{**asdict(e), "timestamp": _iso(e.timestamp)} for e in self.errors],
            "average_quality_score": self.average_quality_score,
            "best_quality_score": self.best_quality_score,
            "started_at": _iso(self.started_at),
            "last_attempt": _iso(self.last_attempt),
            "completed_at": _iso(self.completed_at),
            "next_attempt": _iso(self.next_attempt),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CollectionProgress":
        sources = {}
        for name, stats in data.get("sources", {}).items():
            stats = dict(stats)
            stats["last_searched"] = _parse(stats.get("last_searched"))
            sources[name] = SourceStats(**stats)

        errors = []
        for entry in data.get("errors", []):
            entry = dict(entry)
            entry["timestamp"] = _parse(entry.get("timestamp")) or utcnow()
            errors.append(ErrorEntry(**entry))

        return cls(
            target_count=data["target_count"],
            status=ProgressStatus(data.get("status", "pending")),
            collected_count=data.get("collected_count", 0),
            approved_count=data.get("approved_count", 0),
            rejected_count=data.get("rejected_count", 0),
            manual_review_count=data.get("manual_review_count", 0),
            search_attempts=data.get("search_attempts", 0),
            last_search_terms=data.get("last_search_terms", []),
            sources=sources,
            errors=errors,
            average_quality_score=data.get("average_quality_score"),
            best_quality_score=data.get("best_quality_score"),
            started_at=_parse(data.get("started_at")),
            last_attempt=_parse(data.get("last_attempt")),
            completed_at=_parse(data.get("completed_at")),
            next_attempt=_parse(data.get("next_attempt")),
        )


@dataclass
class Item:
    """A vocabulary item and the images collected for it."""
    item_id: str
    name: str
    category_id: str
    letter: str
    difficulty: int = 2
    candidates: list[ImageCandidate] = field(default_factory=list)
    progress: Optional[CollectionProgress] = None

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.category_id, self.letter, self.item_id)

    @property
    def approved_candidates(self) -> list[ImageCandidate]:
        return [c for c in self.candidates if c.is_approved]

    @property
    def primary(self) -> Optional[ImageCandidate]:
        for candidate in self.candidates:
            if candidate.is_primary and candidate.is_approved:
                return candidate
        return None

    def ensure_primary(self) -> None:
        """Keep exactly one approved primary when any candidate is approved."""
        seen = False
        for candidate in self.candidates:
            if candidate.is_primary and candidate.is_approved:
                if seen:
                    candidate.is_primary = False
                seen = True
        if not seen:
            for candidate in self.candidates:
                if candidate.is_approved:
                    candidate.is_primary = True
                    break
