"""
Task envelopes carried on the queues.

Each envelope is a self-contained description of one unit of work. Consumers
re-read authoritative state by id; the denormalized name/url/title fields are
there for logging and triage only. On the wire the keys are camelCase JSON.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..exceptions import MessageDecodeError
from ..storage.models import Article, Source, User, utcnow


def _parse_enqueued_at(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _require_id(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        raise MessageDecodeError(f"Missing required field '{key}'")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MessageDecodeError(f"Field '{key}' is not an integer id: {value!r}")


def _optional_str(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    return str(value) if value is not None else None


def _retry_count(payload: Dict[str, Any]) -> int:
    try:
        return int(payload.get('retryCount') or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class CrawlTask:
    source_id: int
    source_name: Optional[str] = None
    source_url: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0

    @classmethod
    def for_source(cls, source: Source) -> 'CrawlTask':
        return cls(source_id=source.id, source_name=source.name, source_url=source.url)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sourceId': self.source_id,
            'sourceName': self.source_name,
            'sourceUrl': self.source_url,
            'enqueuedAt': self.enqueued_at.isoformat(),
            'retryCount': self.retry_count,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'CrawlTask':
        return cls(
            source_id=_require_id(payload, 'sourceId'),
            source_name=_optional_str(payload, 'sourceName'),
            source_url=_optional_str(payload, 'sourceUrl'),
            enqueued_at=_parse_enqueued_at(payload.get('enqueuedAt')) or utcnow(),
            retry_count=_retry_count(payload),
        )


@dataclass
class ScrapeTask:
    article_id: int
    article_url: Optional[str] = None
    article_title: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0

    @classmethod
    def for_article(cls, article: Article) -> 'ScrapeTask':
        return cls(article_id=article.id, article_url=article.url, article_title=article.title)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'articleId': self.article_id,
            'articleUrl': self.article_url,
            'articleTitle': self.article_title,
            'enqueuedAt': self.enqueued_at.isoformat(),
            'retryCount': self.retry_count,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'ScrapeTask':
        return cls(
            article_id=_require_id(payload, 'articleId'),
            article_url=_optional_str(payload, 'articleUrl'),
            article_title=_optional_str(payload, 'articleTitle'),
            enqueued_at=_parse_enqueued_at(payload.get('enqueuedAt')) or utcnow(),
            retry_count=_retry_count(payload),
        )


@dataclass
class DigestTask:
    user_id: int
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utcnow)

    @classmethod
    def for_user(cls, user: User) -> 'DigestTask':
        return cls(user_id=user.id, user_email=user.email, user_name=user.full_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'userEmail': self.user_email,
            'userName': self.user_name,
            'enqueuedAt': self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> 'DigestTask':
        return cls(
            user_id=_require_id(payload, 'userId'),
            user_email=_optional_str(payload, 'userEmail'),
            user_name=_optional_str(payload, 'userName'),
            enqueued_at=_parse_enqueued_at(payload.get('enqueuedAt')) or utcnow(),
        )
