import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import feedparser
import requests
from bs4 import BeautifulSoup

from ..exceptions import FeedFetchError
from ..storage.models import Article, Source, utcnow

MAX_DESCRIPTION_LENGTH = 500


@dataclass
class ParsedFeed:
    entries_seen: int = 0
    candidates: List[Article] = field(default_factory=list)


class FeedFetcher:
    def __init__(self, scraping_config: Optional[Dict[str, Any]] = None):
        scraping_config = scraping_config or {}
        self.timeout = scraping_config.get('feed_timeout', 10)
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': scraping_config.get('feed_user_agent', 'NewsAggBot/1.0 (RSS reader)'),
            'Accept': 'application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8',
        })
        self.logger = logging.getLogger('crawler.feed')

    def fetch(self, source: Source) -> ParsedFeed:
        """Fetch one feed document and turn its entries into candidate articles.

        Raises FeedFetchError when the document is unreachable or cannot be
        parsed at all. A single bad entry is logged and skipped.
        """
        self.logger.info(f"Fetching feed for {source.name} ({source.url})")
        try:
            response = self.session.get(source.url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FeedFetchError(source.url, str(e))

        feed = feedparser.parse(response.content)
        if feed.bozo and not feed.entries:
            reason = getattr(feed, 'bozo_exception', None) or 'not a feed document'
            raise FeedFetchError(source.url, f"unparseable feed: {reason}")
        if feed.bozo:
            self.logger.warning(
                f"Feed {source.url} is malformed but yielded entries: "
                f"{getattr(feed, 'bozo_exception', '')}"
            )

        parsed = ParsedFeed(entries_seen=len(feed.entries))
        for entry in feed.entries:
            try:
                article = self.entry_to_article(entry, source)
                if article is not None:
                    parsed.candidates.append(article)
            except Exception as e:
                self.logger.warning(f"Failed to convert entry '{entry.get('title', '')}': {e}")

        self.logger.info(
            f"Parsed feed '{source.name}': {len(parsed.candidates)}/{parsed.entries_seen} entries usable"
        )
        return parsed

    def entry_to_article(self, entry, source: Source) -> Optional[Article]:
        url = (entry.get('link') or '').strip()
        if not url:
            self.logger.debug(f"Skipping entry without link: {entry.get('title', '')}")
            return None

        title = (entry.get('title') or '').strip()
        if not title:
            self.logger.debug(f"Skipping entry without title: {url}")
            return None

        guid = (entry.get('id') or '').strip() or url
        author = (entry.get('author') or '').strip() or None

        return Article(
            source_id=source.id,
            title=title,
            url=url,
            guid=guid,
            description=self._clean_description(entry.get('summary') or entry.get('description')),
            thumbnail_url=self._extract_thumbnail(entry),
            author=author,
            category=source.category,
            published_at=self._extract_published(entry),
            is_scraped=False,
            view_count=0,
        )

    def _clean_description(self, raw: Optional[str]) -> Optional[str]:
        if not raw:
            return None
        text = BeautifulSoup(raw, 'html.parser').get_text(' ')
        text = ' '.join(text.split())
        if len(text) > MAX_DESCRIPTION_LENGTH:
            text = text[:MAX_DESCRIPTION_LENGTH - 3] + '...'
        return text

    def _extract_published(self, entry) -> datetime:
        for key in ('published_parsed', 'updated_parsed'):
            parsed = entry.get(key)
            if parsed:
                return datetime(*parsed[:6], tzinfo=timezone.utc)
        return utcnow()

    def _extract_thumbnail(self, entry) -> Optional[str]:
        for enclosure in entry.get('enclosures') or []:
            if (enclosure.get('type') or '').startswith('image/') and enclosure.get('href'):
                return enclosure['href']

        for key in ('media_content', 'media_thumbnail'):
            media = entry.get(key) or []
            if media and media[0].get('url'):
                return media[0]['url']

        return None
