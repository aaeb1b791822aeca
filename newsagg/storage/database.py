import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from .models import (
    Article, CrawlLog, CrawlOutcome, CrawlStatus, DigestFrequency, DigestLog,
    DigestStatus, Source, User, utcnow,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = db_path
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        self._init_database()

    def _init_database(self):
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    url TEXT UNIQUE NOT NULL,
                    website_url TEXT,
                    category TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT TRUE,
                    last_crawled_at TIMESTAMP,
                    crawl_status TEXT DEFAULT 'PENDING',
                    error_message TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS articles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    url TEXT UNIQUE NOT NULL,
                    guid TEXT,
                    description TEXT,
                    content TEXT,
                    thumbnail_url TEXT,
                    author TEXT,
                    category TEXT,
                    published_at TIMESTAMP,
                    is_scraped BOOLEAN DEFAULT FALSE,
                    view_count INTEGER DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (source_id) REFERENCES sources (id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS crawl_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    articles_found INTEGER DEFAULT 0,
                    articles_saved INTEGER DEFAULT 0,
                    duration_ms INTEGER,
                    error_message TEXT,
                    crawled_at TIMESTAMP NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT UNIQUE NOT NULL,
                    full_name TEXT,
                    is_active BOOLEAN DEFAULT TRUE,
                    email_verified BOOLEAN DEFAULT FALSE,
                    digest_enabled BOOLEAN DEFAULT FALSE,
                    digest_frequency TEXT DEFAULT 'DAILY',
                    category_preferences TEXT,
                    last_digest_sent_at TIMESTAMP,
                    unsubscribe_token TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS digest_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    recipient_email TEXT NOT NULL,
                    articles_count INTEGER DEFAULT 0,
                    error_message TEXT,
                    sent_at TIMESTAMP NOT NULL
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_articles_guid ON articles(guid)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_articles_category ON articles(category)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_articles_scraped ON articles(is_scraped)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_crawl_logs_source ON crawl_logs(source_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_digest_logs_user ON digest_logs(user_id)')

            conn.commit()

    @contextmanager
    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # Sources

    def add_source(self, source: Source) -> int:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO sources
                (name, url, website_url, category, is_active, crawl_status)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                source.name, source.url, source.website_url, source.category,
                source.is_active, CrawlStatus(source.crawl_status).value
            ))
            conn.commit()
            return cursor.lastrowid

    def get_source(self, source_id: int) -> Optional[Source]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM sources WHERE id = ?", (source_id,))
            row = cursor.fetchone()
            return self._row_to_source(row) if row else None

    def get_source_by_url(self, url: str) -> Optional[Source]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM sources WHERE url = ?", (url,))
            row = cursor.fetchone()
            return self._row_to_source(row) if row else None

    def find_active_sources(self) -> List[Source]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM sources WHERE is_active = TRUE ORDER BY id")
            return [self._row_to_source(row) for row in cursor.fetchall()]

    def update_source_crawl_status(self, source_id: int, status: CrawlStatus,
                                   error_message: Optional[str] = None,
                                   crawled_at: Optional[datetime] = None):
        with self.get_connection() as conn:
            cursor = conn.cursor()
            if status == CrawlStatus.SUCCESS:
                cursor.execute('''
                    UPDATE sources
                    SET crawl_status = ?, error_message = NULL, last_crawled_at = ?
                    WHERE id = ?
                ''', (status.value, _ts(crawled_at or utcnow()), source_id))
            else:
                cursor.execute('''
                    UPDATE sources SET crawl_status = ?, error_message = ?
                    WHERE id = ?
                ''', (CrawlStatus(status).value, error_message, source_id))
            conn.commit()

    # Articles

    def exists_by_url(self, url: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1 FROM articles WHERE url = ? LIMIT 1", (url,))
            return cursor.fetchone() is not None

    def exists_by_guid(self, guid: str) -> bool:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1 FROM articles WHERE guid = ? LIMIT 1", (guid,))
            return cursor.fetchone() is not None

    def save_articles(self, articles: Iterable[Article]) -> List[Article]:
        """Insert a batch of new articles in one transaction.

        A URL that already exists is ignored instead of raising, so a racing
        duplicate insert becomes a no-op. Returns only the rows actually
        inserted, with their ids filled in.
        """
        saved = []
        with self.get_connection() as conn:
            cursor = conn.cursor()
            for article in articles:
                created_at = article.created_at or utcnow()
                cursor.execute('''
                    INSERT OR IGNORE INTO articles
                    (source_id, title, url, guid, description, content, thumbnail_url,
                     author, category, published_at, is_scraped, view_count, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    article.source_id, article.title, article.url, article.guid,
                    article.description, article.content, article.thumbnail_url,
                    article.author, article.category, _ts(article.published_at),
                    article.is_scraped, article.view_count, _ts(created_at)
                ))
                if cursor.rowcount:
                    article.id = cursor.lastrowid
                    article.created_at = created_at
                    saved.append(article)
            conn.commit()
        return saved

    def get_article(self, article_id: int) -> Optional[Article]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM articles WHERE id = ?", (article_id,))
            row = cursor.fetchone()
            return self._row_to_article(row) if row else None

    def get_articles(self, limit: int = 50, offset: int = 0,
                     category: Optional[str] = None) -> List[Article]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            query = "SELECT * FROM articles"
            params = []

            if category:
                query += " WHERE category = ?"
                params.append(category)

            query += " ORDER BY published_at DESC LIMIT ? OFFSET ?"
            params.extend([limit, offset])

            cursor.execute(query, params)
            return [self._row_to_article(row) for row in cursor.fetchall()]

    def find_unscraped_articles(self, limit: int = 10) -> List[Article]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT * FROM articles WHERE is_scraped = FALSE
                ORDER BY created_at DESC LIMIT ?
            ''', (limit,))
            return [self._row_to_article(row) for row in cursor.fetchall()]

    def mark_article_scraped(self, article_id: int, content: Optional[str],
                             thumbnail_url: Optional[str]) -> bool:
        """Record a scrape attempt in a single statement.

        Applies only while the article is still unscraped, and never replaces a
        thumbnail the feed already provided. Returns False when another worker
        got there first.
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                UPDATE articles
                SET content = ?,
                    thumbnail_url = COALESCE(thumbnail_url, ?),
                    is_scraped = TRUE
                WHERE id = ? AND is_scraped = FALSE
            ''', (content, thumbnail_url, article_id))
            conn.commit()
            return cursor.rowcount > 0

    def find_popular_by_category(self, category: str, since: datetime,
                                 limit: int = 3) -> List[Article]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT * FROM articles
                WHERE category = ? AND published_at >= ?
                ORDER BY view_count DESC, published_at DESC
                LIMIT ?
            ''', (category, _ts(since), limit))
            return [self._row_to_article(row) for row in cursor.fetchall()]

    def cleanup_old_articles(self, retention_days: int) -> int:
        cutoff_date = utcnow() - timedelta(days=retention_days)
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('DELETE FROM articles WHERE created_at < ?', (_ts(cutoff_date),))
            deleted_count = cursor.rowcount
            conn.commit()
            return deleted_count

    def get_article_count(self) -> int:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('SELECT COUNT(*) FROM articles')
            return cursor.fetchone()[0]

    # Crawl logs

    def add_crawl_log(self, crawl_log: CrawlLog) -> CrawlLog:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO crawl_logs
                (source_id, status, articles_found, articles_saved, duration_ms,
                 error_message, crawled_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                crawl_log.source_id, CrawlOutcome(crawl_log.status).value,
                crawl_log.articles_found, crawl_log.articles_saved,
                crawl_log.duration_ms, crawl_log.error_message, _ts(crawl_log.crawled_at)
            ))
            conn.commit()
            crawl_log.id = cursor.lastrowid
            return crawl_log

    def get_crawl_logs(self, source_id: int, limit: int = 20) -> List[CrawlLog]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT * FROM crawl_logs WHERE source_id = ?
                ORDER BY crawled_at DESC, id DESC LIMIT ?
            ''', (source_id, limit))
            return [CrawlLog(
                id=row['id'],
                source_id=row['source_id'],
                status=CrawlOutcome(row['status']),
                articles_found=row['articles_found'],
                articles_saved=row['articles_saved'],
                duration_ms=row['duration_ms'],
                error_message=row['error_message'],
                crawled_at=_parse_ts(row['crawled_at'])
            ) for row in cursor.fetchall()]

    # Users and digest logs

    def add_user(self, user: User) -> int:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO users
                (email, full_name, is_active, email_verified, digest_enabled,
                 digest_frequency, category_preferences, last_digest_sent_at,
                 unsubscribe_token)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                user.email, user.full_name, user.is_active, user.email_verified,
                user.digest_enabled, DigestFrequency(user.digest_frequency).value,
                json.dumps(user.category_preferences), _ts(user.last_digest_sent_at),
                user.unsubscribe_token
            ))
            conn.commit()
            return cursor.lastrowid

    def get_user(self, user_id: int) -> Optional[User]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
            return self._row_to_user(row) if row else None

    def find_digest_subscribers(self) -> List[User]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT * FROM users
                WHERE digest_enabled = TRUE
                  AND email_verified = TRUE
                  AND is_active = TRUE
                ORDER BY id
            ''')
            return [self._row_to_user(row) for row in cursor.fetchall()]

    def get_user_by_unsubscribe_token(self, token: str) -> Optional[User]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM users WHERE unsubscribe_token = ?", (token,))
            row = cursor.fetchone()
            return self._row_to_user(row) if row else None

    def set_digest_enabled(self, user_id: int, enabled: bool):
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE users SET digest_enabled = ? WHERE id = ?",
                (enabled, user_id)
            )
            conn.commit()

    def claim_digest_send(self, user_id: int, previous: Optional[datetime],
                          claimed_at: datetime) -> bool:
        """Move ``last_digest_sent_at`` from ``previous`` to ``claimed_at``.

        Only one of several concurrent callers holding the same ``previous``
        value succeeds.
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE users SET last_digest_sent_at = ? WHERE id = ? AND last_digest_sent_at IS ?",
                (_ts(claimed_at), user_id, _ts(previous))
            )
            conn.commit()
            return cursor.rowcount == 1

    def release_digest_claim(self, user_id: int, claimed_at: datetime,
                             previous: Optional[datetime]):
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE users SET last_digest_sent_at = ? WHERE id = ? AND last_digest_sent_at IS ?",
                (_ts(previous), user_id, _ts(claimed_at))
            )
            conn.commit()

    def add_digest_log(self, digest_log: DigestLog) -> DigestLog:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO digest_logs
                (user_id, status, recipient_email, articles_count, error_message, sent_at)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                digest_log.user_id, DigestStatus(digest_log.status).value,
                digest_log.recipient_email, digest_log.articles_count,
                digest_log.error_message, _ts(digest_log.sent_at)
            ))
            conn.commit()
            digest_log.id = cursor.lastrowid
            return digest_log

    def get_digest_logs(self, user_id: int) -> List[DigestLog]:
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM digest_logs WHERE user_id = ? ORDER BY id",
                (user_id,)
            )
            return [DigestLog(
                id=row['id'],
                user_id=row['user_id'],
                status=DigestStatus(row['status']),
                recipient_email=row['recipient_email'],
                articles_count=row['articles_count'],
                error_message=row['error_message'],
                sent_at=_parse_ts(row['sent_at'])
            ) for row in cursor.fetchall()]

    # Row mapping

    @staticmethod
    def _row_to_source(row) -> Source:
        return Source(
            id=row['id'],
            name=row['name'],
            url=row['url'],
            website_url=row['website_url'],
            category=row['category'],
            is_active=bool(row['is_active']),
            last_crawled_at=_parse_ts(row['last_crawled_at']),
            crawl_status=CrawlStatus(row['crawl_status']),
            error_message=row['error_message']
        )

    @staticmethod
    def _row_to_article(row) -> Article:
        return Article(
            id=row['id'],
            source_id=row['source_id'],
            title=row['title'],
            url=row['url'],
            guid=row['guid'],
            description=row['description'],
            content=row['content'],
            thumbnail_url=row['thumbnail_url'],
            author=row['author'],
            category=row['category'],
            published_at=_parse_ts(row['published_at']),
            is_scraped=bool(row['is_scraped']),
            view_count=row['view_count'],
            created_at=_parse_ts(row['created_at'])
        )

    @staticmethod
    def _row_to_user(row) -> User:
        preferences = json.loads(row['category_preferences']) if row['category_preferences'] else []
        return User(
            id=row['id'],
            email=row['email'],
            full_name=row['full_name'] or "",
            is_active=bool(row['is_active']),
            email_verified=bool(row['email_verified']),
            digest_enabled=bool(row['digest_enabled']),
            digest_frequency=DigestFrequency(row['digest_frequency']),
            category_preferences=preferences,
            last_digest_sent_at=_parse_ts(row['last_digest_sent_at']),
            unsubscribe_token=row['unsubscribe_token']
        )
