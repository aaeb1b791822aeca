import asyncio
import pytest
import tempfile
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import aiosmtplib

from newsagg.digest.dispatcher import DigestDispatcher
from newsagg.queue.broker import QUEUE_EMAIL_DIGEST, InMemoryBroker, declare_topology
from newsagg.storage.database import DatabaseManager
from newsagg.storage.models import Article, DigestFrequency, DigestStatus, Source, User, utcnow
from newsagg.utils.email_service import DeliveryResult, EmailConfig, EmailService, build_email_service


class TestDigestDispatcher:
    def setup_method(self):
        self.temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        self.temp_db.close()
        self.db_manager = DatabaseManager(self.temp_db.name)
        self.broker = InMemoryBroker()
        declare_topology(self.broker)

        self.email_service = Mock()
        self.email_service.render_digest.return_value = "<html>digest</html>"
        self.email_service.render_digest_text.return_value = "digest"
        self.email_service.send = AsyncMock(return_value=DeliveryResult(success=True))

        self.dispatcher = DigestDispatcher(
            self.db_manager, self.broker, self.email_service, {'base_url': 'https://news.example.com'}
        )

        source_id = self.db_manager.add_source(Source(
            name="Example", url="https://example.com/rss", category="technology"
        ))
        now = utcnow()
        self.db_manager.save_articles([
            Article(source_id=source_id, title=f"Tech {i}", url=f"https://example.com/tech/{i}",
                    category="technology", view_count=i, published_at=now - timedelta(hours=1))
            for i in range(5)
        ] + [
            Article(source_id=source_id, title="Old", url="https://example.com/old",
                    category="technology", view_count=99, published_at=now - timedelta(days=2))
        ])

        self.user_id = self.db_manager.add_user(User(
            email="reader@example.com", full_name="Reader", email_verified=True,
            digest_enabled=True, category_preferences=["technology", "sports"],
            unsubscribe_token="tok-1"
        ))

    def teardown_method(self):
        os.unlink(self.temp_db.name)

    async def test_deliver_sends_top_articles(self):
        digest_log = await self.dispatcher.deliver(self.user_id)

        assert digest_log.status == DigestStatus.SENT
        assert digest_log.articles_count == 3
        assert digest_log.recipient_email == "reader@example.com"

        kwargs = self.email_service.render_digest.call_args.kwargs
        articles = kwargs['articles_by_category']
        assert list(articles) == ["technology"]
        assert [a.title for a in articles["technology"]] == ["Tech 4", "Tech 3", "Tech 2"]
        assert kwargs['unsubscribe_url'] == "https://news.example.com/api/digest/unsubscribe?token=tok-1"
        assert kwargs['digest_date'] == digest_log.sent_at

        args = self.email_service.send.await_args.args
        assert args[0] == "reader@example.com"
        assert self.db_manager.get_user(self.user_id).last_digest_sent_at is not None

    async def test_second_delivery_is_skipped(self):
        first = await self.dispatcher.deliver(self.user_id)
        second = await self.dispatcher.deliver(self.user_id)

        assert first.status == DigestStatus.SENT
        assert second.status == DigestStatus.SKIPPED
        assert self.email_service.send.await_count == 1
        assert [log.status for log in self.db_manager.get_digest_logs(self.user_id)] == [
            DigestStatus.SENT, DigestStatus.SKIPPED
        ]

    async def test_delivery_failure_is_recorded(self):
        self.email_service.send.return_value = DeliveryResult(success=False, error="SMTP timeout")

        digest_log = await self.dispatcher.deliver(self.user_id)

        assert digest_log.status == DigestStatus.FAILED
        assert digest_log.error_message == "SMTP timeout"
        assert self.db_manager.get_user(self.user_id).last_digest_sent_at is None

    async def test_concurrent_deliveries_send_once(self):
        async def slow_send(*args, **kwargs):
            await asyncio.sleep(0.05)
            return DeliveryResult(success=True)
        self.email_service.send = AsyncMock(side_effect=slow_send)

        logs = await asyncio.gather(
            self.dispatcher.deliver(self.user_id),
            self.dispatcher.deliver(self.user_id),
        )

        assert sorted(log.status.value for log in logs) == [DigestStatus.SENT.value, DigestStatus.SKIPPED.value]
        assert self.email_service.send.await_count == 1

    async def test_lost_claim_is_skipped(self):
        with patch.object(self.db_manager, 'claim_digest_send', return_value=False):
            digest_log = await self.dispatcher.deliver(self.user_id)

        assert digest_log.status == DigestStatus.SKIPPED
        assert digest_log.error_message == "Already sent"
        self.email_service.send.assert_not_awaited()

    async def test_cancelled_send_releases_claim(self):
        self.email_service.send = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await self.dispatcher.deliver(self.user_id)

        assert self.db_manager.get_user(self.user_id).last_digest_sent_at is None

    async def test_no_matching_articles_is_skipped(self):
        user_id = self.db_manager.add_user(User(
            email="sports@example.com", email_verified=True, digest_enabled=True,
            category_preferences=["sports"]
        ))

        digest_log = await self.dispatcher.deliver(user_id)

        assert digest_log.status == DigestStatus.SKIPPED
        self.email_service.send.assert_not_awaited()

    async def test_no_preferences_is_skipped(self):
        user_id = self.db_manager.add_user(User(
            email="none@example.com", email_verified=True, digest_enabled=True
        ))

        digest_log = await self.dispatcher.deliver(user_id)

        assert digest_log.status == DigestStatus.SKIPPED
        assert digest_log.error_message == "No category preferences"

    async def test_missing_user_returns_none(self):
        assert await self.dispatcher.deliver(999) is None

    async def test_without_email_service_fails(self):
        dispatcher = DigestDispatcher(self.db_manager, self.broker, None)

        digest_log = await dispatcher.deliver(self.user_id)

        assert digest_log.status == DigestStatus.FAILED
        assert digest_log.error_message == "Email delivery is not configured"

    def test_enqueue_due_digests(self):
        now = utcnow()
        self.db_manager.add_user(User(
            email="recent@example.com", email_verified=True, digest_enabled=True,
            digest_frequency=DigestFrequency.WEEKLY, category_preferences=["technology"],
            last_digest_sent_at=now - timedelta(days=2)
        ))
        self.db_manager.add_user(User(
            email="disabled@example.com", email_verified=True, digest_enabled=False
        ))

        assert self.dispatcher.enqueue_due_digests(now) == 1
        assert self.broker.depth(QUEUE_EMAIL_DIGEST) == 1


class TestEmailService:
    def setup_method(self):
        self.service = EmailService(EmailConfig(
            smtp_server="smtp.example.com",
            smtp_port=587,
            username="user",
            password="secret",
            from_email="no-reply@example.com"
        ))
        self.articles = {
            "technology": [Article(title="Chips & Things", url="https://example.com/chips",
                                   description="A story about chips")]
        }

    def test_render_digest(self):
        html = self.service.render_digest(
            user_name="Reader",
            articles_by_category=self.articles,
            total_articles=1,
            base_url="https://news.example.com",
            unsubscribe_url="https://news.example.com/api/digest/unsubscribe?token=abc"
        )

        assert "Hi Reader" in html
        assert "Chips &amp; Things" in html
        assert "https://example.com/chips" in html
        assert "token=abc" in html

    def test_render_digest_uses_given_date(self):
        html = self.service.render_digest(
            user_name="Reader",
            articles_by_category=self.articles,
            total_articles=1,
            base_url="https://news.example.com",
            unsubscribe_url="https://unsubscribe",
            digest_date=datetime(2026, 1, 1, 23, 59, tzinfo=timezone.utc)
        )

        assert "Thursday, 01 January 2026" in html

    def test_fallback_html_escapes_feed_fields(self):
        with tempfile.TemporaryDirectory() as empty_dir:
            service = EmailService(self.service.config, templates_dir=empty_dir)
            html = service.render_digest(
                user_name="Reader",
                articles_by_category={"<b>tech</b>": [
                    Article(title="<script>alert(1)</script>", url='https://example.com/"onmouseover="x')
                ]},
                total_articles=1,
                base_url="https://news.example.com",
                unsubscribe_url="https://unsubscribe?token=a&b"
            )

        assert "<script>" not in html
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
        assert "&lt;b&gt;tech&lt;/b&gt;" in html
        assert '"onmouseover="' not in html
        assert "token=a&amp;b" in html

    def test_render_digest_text(self):
        text = self.service.render_digest_text(self.articles, "https://unsubscribe")

        assert "TECHNOLOGY" in text
        assert "https://example.com/chips" in text
        assert text.endswith("Unsubscribe: https://unsubscribe")

    @patch('newsagg.utils.email_service.aiosmtplib.send', new_callable=AsyncMock)
    async def test_send_success(self, mock_send):
        result = await self.service.send("reader@example.com", "Digest", "<p>hi</p>", "hi", to_name="Reader")

        assert result.success
        message = mock_send.await_args.args[0]
        assert message['To'] == "Reader <reader@example.com>"
        assert message['Subject'] == "Digest"
        assert mock_send.await_args.kwargs['hostname'] == "smtp.example.com"
        assert mock_send.await_args.kwargs['start_tls'] is True

    @patch('newsagg.utils.email_service.aiosmtplib.send', new_callable=AsyncMock)
    async def test_send_failure_reported_in_result(self, mock_send):
        mock_send.side_effect = aiosmtplib.SMTPException("mailbox unavailable")

        result = await self.service.send("reader@example.com", "Digest", "<p>hi</p>")

        assert not result.success
        assert "mailbox unavailable" in result.error

    def test_build_email_service_disabled(self):
        assert build_email_service({'enabled': False}) is None
        assert build_email_service({}) is None
