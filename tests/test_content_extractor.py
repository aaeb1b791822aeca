import requests
from unittest.mock import Mock, patch
from bs4 import BeautifulSoup

from newsagg.crawler.content_extractor import DEFAULT_USER_AGENT, ContentExtractor

LONG_TEXT = "This sentence is long enough to be counted as real article body text. " * 3


class TestContentExtractor:
    def setup_method(self):
        self.extractor = ContentExtractor()

    def test_default_user_agent(self):
        assert self.extractor.session.headers['User-Agent'] == DEFAULT_USER_AGENT
        assert self.extractor.timeout == 15

    def test_article_tag_wins(self):
        soup = BeautifulSoup(f'''
            <html><body>
              <article><p>{LONG_TEXT}</p></article>
              <div class="post-content">{"Other " * 50}</div>
            </body></html>
        ''', 'html.parser')

        content = self.extractor.extract_content(soup)

        assert content.startswith("This sentence")

    def test_selector_priority_order(self):
        soup = BeautifulSoup(f'''
            <html><body>
              <div class="content">{"Generic content block. " * 10}</div>
              <div class="entry-content">{"Entry content block. " * 10}</div>
            </body></html>
        ''', 'html.parser')

        content = self.extractor.extract_content(soup)

        assert content.startswith("Entry content block.")

    def test_short_article_falls_through_to_selectors(self):
        soup = BeautifulSoup(f'''
            <html><body>
              <article>Too short</article>
              <main>{LONG_TEXT}</main>
            </body></html>
        ''', 'html.parser')

        assert self.extractor.extract_content(soup).startswith("This sentence")

    def test_paragraph_fallback(self):
        soup = BeautifulSoup('''
            <html><body>
              <div><p>Short one.</p></div>
              <div><p>The first paragraph is comfortably longer than fifty characters.</p></div>
              <div><p>The second paragraph is also comfortably longer than fifty characters.</p></div>
            </body></html>
        ''', 'html.parser')

        content = self.extractor.extract_content(soup)

        assert content == (
            "The first paragraph is comfortably longer than fifty characters.\n\n"
            "The second paragraph is also comfortably longer than fifty characters."
        )

    def test_no_strategy_yields_none(self):
        soup = BeautifulSoup('<html><body><p>Tiny.</p></body></html>', 'html.parser')
        assert self.extractor.extract_content(soup) is None

    def test_thumbnail_order_and_relative_urls(self):
        soup = BeautifulSoup('''
            <html><head>
              <meta name="twitter:image" content="https://cdn.example.com/twitter.jpg">
              <meta property="og:image" content="/images/og.jpg">
            </head><body><article><img src="inline.jpg"></article></body></html>
        ''', 'html.parser')
        assert self.extractor.extract_thumbnail(soup, "https://example.com/news/story") == \
            "https://example.com/images/og.jpg"

        soup = BeautifulSoup('''
            <html><body><article><img src="inline.jpg"></article></body></html>
        ''', 'html.parser')
        assert self.extractor.extract_thumbnail(soup, "https://example.com/news/story") == \
            "https://example.com/news/inline.jpg"

    def test_clean_content_collapses_whitespace_runs(self):
        assert self.extractor.clean_content("One.   Two.\n\n\n\nThree. Four.") == \
            "One.\n\nTwo.\n\nThree. Four."

    @patch('newsagg.crawler.content_extractor.requests.Session.get')
    def test_scrape_success(self, mock_get):
        mock_response = Mock()
        mock_response.content = f'''
            <html><head><meta property="og:image" content="https://cdn.example.com/a.jpg"></head>
            <body><article>{LONG_TEXT}</article></body></html>
        '''.encode('utf-8')
        mock_response.raise_for_status.return_value = None
        mock_get.return_value = mock_response

        result = self.extractor.scrape("https://example.com/a")

        assert result.success
        assert result.content.startswith("This sentence")
        assert result.thumbnail_url == "https://cdn.example.com/a.jpg"

    @patch('newsagg.crawler.content_extractor.requests.Session.get')
    def test_scrape_failure_does_not_raise(self, mock_get):
        mock_get.side_effect = requests.Timeout("timed out")

        result = self.extractor.scrape("https://example.com/a")

        assert not result.success
        assert result.content is None
        assert result.thumbnail_url is None
