"""
Email delivery for News Digest
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import aiosmtplib
from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import escape

from ..exceptions import EmailDeliveryError

DEFAULT_TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'templates')


@dataclass
class EmailConfig:
    """Email configuration settings"""
    smtp_server: str
    smtp_port: int
    username: str
    password: str
    from_email: str
    from_name: str = "News Aggregator"
    use_tls: bool = True
    timeout: float = 30


@dataclass
class DeliveryResult:
    success: bool
    error: Optional[str] = None


class EmailService:
    """Renders digest emails and sends them over SMTP"""

    def __init__(self, email_config: EmailConfig, templates_dir: str = DEFAULT_TEMPLATES_DIR):
        self.config = email_config
        self.templates_dir = templates_dir
        self.logger = logging.getLogger('email_service')

        self.jinja_env = Environment(
            loader=FileSystemLoader(templates_dir),
            autoescape=select_autoescape(['html', 'xml'])
        )

    def render_digest(self, user_name: str, articles_by_category: Dict[str, List[Any]],
                      total_articles: int, base_url: str, unsubscribe_url: str,
                      digest_date: Optional[datetime] = None) -> str:
        """Render HTML digest using Jinja2 template"""
        context = {
            'user_name': user_name,
            'articles_by_category': articles_by_category,
            'total_articles': total_articles,
            'base_url': base_url,
            'unsubscribe_url': unsubscribe_url,
            'digest_date': (digest_date or datetime.now(timezone.utc)).strftime("%A, %d %B %Y"),
        }
        try:
            template = self.jinja_env.get_template('digest_email.html')
            return template.render(**context)
        except Exception as e:
            self.logger.error(f"Error rendering digest template: {e}")
            return self._generate_fallback_html(articles_by_category, unsubscribe_url)

    def render_digest_text(self, articles_by_category: Dict[str, List[Any]],
                           unsubscribe_url: str) -> str:
        """Generate plain text version of the digest"""
        lines = [
            "NEWS DIGEST",
            "=" * 11,
            ""
        ]

        for category, articles in articles_by_category.items():
            lines.append(category.upper())
            for article in articles:
                lines.append(f"  • {article.title}")
                lines.append(f"    {article.url}")
            lines.append("")

        lines.extend([
            "---",
            f"Unsubscribe: {unsubscribe_url}"
        ])
        return "\n".join(lines)

    def _generate_fallback_html(self, articles_by_category: Dict[str, List[Any]],
                                unsubscribe_url: str) -> str:
        """Generate simple HTML fallback if template fails"""
        html = """
        <html>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #333;">News Digest</h2>
        """
        for category, articles in articles_by_category.items():
            html += f"<h3>{escape(category)}</h3><ul>"
            for article in articles:
                html += f'<li><a href="{escape(article.url)}">{escape(article.title)}</a></li>'
            html += "</ul>"

        html += f"""
            <hr>
            <small><a href="{escape(unsubscribe_url)}">Unsubscribe</a></small>
        </body>
        </html>
        """
        return html

    async def send(self, to_email: str, subject: str, html_content: str,
                   text_content: Optional[str] = None, to_name: str = "") -> DeliveryResult:
        """Send one email, reporting failure in the result instead of raising"""
        try:
            await self._send_single_email(to_email, to_name, subject, html_content, text_content)
        except (aiosmtplib.SMTPException, OSError, EmailDeliveryError) as e:
            self.logger.error(f"Failed to send email to {to_email}: {e}")
            return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

        self.logger.info(f"Email sent to {to_email}")
        return DeliveryResult(success=True)

    async def _send_single_email(self, to_email: str, to_name: str, subject: str,
                                 html_content: str, text_content: Optional[str]):
        """Send a single email using aiosmtplib"""
        if not to_email:
            raise EmailDeliveryError("Recipient address is empty")

        msg = MIMEMultipart('alternative')
        msg['From'] = f"{self.config.from_name} <{self.config.from_email}>"
        msg['To'] = f"{to_name} <{to_email}>" if to_name else to_email
        msg['Subject'] = subject

        if text_content:
            msg.attach(MIMEText(text_content, 'plain', 'utf-8'))
        msg.attach(MIMEText(html_content, 'html', 'utf-8'))

        await aiosmtplib.send(
            msg,
            hostname=self.config.smtp_server,
            port=self.config.smtp_port,
            start_tls=self.config.use_tls,
            username=self.config.username or None,
            password=self.config.password or None,
            timeout=self.config.timeout,
        )


def build_email_service(email_config: Dict[str, Any]) -> Optional[EmailService]:
    """Create the email service from the ``email`` config section, or None if disabled"""
    if not email_config or not email_config.get('enabled', False):
        return None

    return EmailService(EmailConfig(
        smtp_server=email_config['smtp_server'],
        smtp_port=email_config['smtp_port'],
        username=email_config.get('username', ''),
        password=email_config.get('password', ''),
        from_email=email_config['from_email'],
        from_name=email_config.get('from_name', 'News Aggregator'),
        use_tls=email_config.get('use_tls', True),
        timeout=email_config.get('timeout', 30),
    ))
