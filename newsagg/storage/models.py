from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrawlStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class CrawlOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DigestStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class DigestFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


# 23h / 6d rather than 24h / 7d: absorbs scheduler jitter
DIGEST_THRESHOLDS = {
    DigestFrequency.DAILY: timedelta(hours=23),
    DigestFrequency.WEEKLY: timedelta(days=6),
}


@dataclass
class Source:
    id: Optional[int] = None
    name: str = ""
    url: str = ""
    category: str = ""
    website_url: Optional[str] = None
    is_active: bool = True
    last_crawled_at: Optional[datetime] = None
    crawl_status: CrawlStatus = CrawlStatus.PENDING
    error_message: Optional[str] = None


@dataclass
class Article:
    id: Optional[int] = None
    source_id: Optional[int] = None
    title: str = ""
    url: str = ""
    guid: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    thumbnail_url: Optional[str] = None
    author: Optional[str] = None
    category: str = ""
    published_at: Optional[datetime] = None
    is_scraped: bool = False
    view_count: int = 0
    created_at: Optional[datetime] = None


@dataclass
class CrawlLog:
    id: Optional[int] = None
    source_id: Optional[int] = None
    status: CrawlOutcome = CrawlOutcome.SUCCESS
    articles_found: int = 0
    articles_saved: int = 0
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    crawled_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: Optional[int] = None
    email: str = ""
    full_name: str = ""
    is_active: bool = True
    email_verified: bool = False
    digest_enabled: bool = False
    digest_frequency: DigestFrequency = DigestFrequency.DAILY
    category_preferences: List[str] = field(default_factory=list)
    last_digest_sent_at: Optional[datetime] = None
    unsubscribe_token: Optional[str] = None

    def is_due_for_digest(self, now: Optional[datetime] = None) -> bool:
        if self.last_digest_sent_at is None:
            return True
        now = now or utcnow()
        threshold = DIGEST_THRESHOLDS[DigestFrequency(self.digest_frequency)]
        return now - self.last_digest_sent_at >= threshold


@dataclass
class DigestLog:
    id: Optional[int] = None
    user_id: Optional[int] = None
    status: DigestStatus = DigestStatus.SENT
    recipient_email: str = ""
    articles_count: int = 0
    error_message: Optional[str] = None
    sent_at: datetime = field(default_factory=utcnow)
