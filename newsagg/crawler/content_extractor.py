import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; NewsAggBot/1.0; +https://newsagg.com/bot)"

CONTENT_SELECTORS = [
    "[class*='article-body']",
    "[class*='article-content']",
    "[class*='post-content']",
    "[class*='entry-content']",
    "[class*='story-body']",
    "[class*='content-body']",
    "[class*='read-more']",
    "main",
    "#content",
    ".content",
]


@dataclass
class ScrapeResult:
    content: Optional[str]
    thumbnail_url: Optional[str]
    success: bool


class ContentExtractor:
    def __init__(self, scraping_config: Optional[Dict[str, Any]] = None):
        scraping_config = scraping_config or {}
        self.timeout = scraping_config.get('timeout', 15)
        self.min_content_length = scraping_config.get('min_content_length', 100)
        self.min_paragraph_length = scraping_config.get('min_paragraph_length', 50)

        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': scraping_config.get('user_agent', DEFAULT_USER_AGENT),
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.5',
        })

        # Tried in order; the first result longer than min_content_length wins.
        self.strategies: List[Callable[[BeautifulSoup], Optional[str]]] = [
            self._from_article_tag,
            self._from_content_selectors,
            self._from_paragraphs,
        ]

        self.logger = logging.getLogger('crawler.content')

    def fetch_page(self, url: str) -> BeautifulSoup:
        response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        response.raise_for_status()
        return BeautifulSoup(response.content, 'html.parser')

    def scrape(self, url: str) -> ScrapeResult:
        """Fetch an article page and pull out its main text and a thumbnail.

        Never raises for site-side problems: an unreachable or unparseable page
        comes back as an unsuccessful result with no content.
        """
        try:
            soup = self.fetch_page(url)
            content = self.extract_content(soup)
            thumbnail = self.extract_thumbnail(soup, url)
        except Exception as e:
            self.logger.warning(f"Failed to scrape '{url}': {e}")
            return ScrapeResult(content=None, thumbnail_url=None, success=False)

        self.logger.debug(
            f"Scraped {len(content) if content else 0} characters from {url}"
        )
        return ScrapeResult(content=content, thumbnail_url=thumbnail, success=True)

    def extract_content(self, soup: BeautifulSoup) -> Optional[str]:
        for strategy in self.strategies:
            text = strategy(soup)
            if text and len(text) > self.min_content_length:
                return self.clean_content(text)

        self.logger.debug("No extraction strategy produced enough text")
        return None

    def _from_article_tag(self, soup: BeautifulSoup) -> Optional[str]:
        article = soup.find('article')
        return article.get_text(' ', strip=True) if article else None

    def _from_content_selectors(self, soup: BeautifulSoup) -> Optional[str]:
        for selector in CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            text = element.get_text(' ', strip=True)
            if len(text) > self.min_content_length:
                self.logger.debug(f"Content found with selector: {selector}")
                return text
        return None

    def _from_paragraphs(self, soup: BeautifulSoup) -> Optional[str]:
        blocks = []
        for paragraph in soup.find_all('p'):
            text = paragraph.get_text(' ', strip=True)
            if len(text) > self.min_paragraph_length:
                blocks.append(text)
        return '\n\n'.join(blocks) if blocks else None

    def extract_thumbnail(self, soup: BeautifulSoup, page_url: str) -> Optional[str]:
        og_image = soup.select_one("meta[property='og:image']")
        if og_image and (og_image.get('content') or '').strip():
            return urljoin(page_url, og_image['content'].strip())

        twitter_image = soup.select_one("meta[name='twitter:image']")
        if twitter_image and (twitter_image.get('content') or '').strip():
            return urljoin(page_url, twitter_image['content'].strip())

        article_img = soup.select_one('article img')
        if article_img and (article_img.get('src') or '').strip():
            return urljoin(page_url, article_img['src'].strip())

        return None

    def clean_content(self, text: str) -> str:
        return re.sub(r'\s{3,}', '\n\n', text).strip()
