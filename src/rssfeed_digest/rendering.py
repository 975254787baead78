"""Email rendering for digests: HTML, plain text and subject lines."""

import html
import re
from datetime import date, datetime

from jinja2 import Environment

from rssfeed_digest.models import Digest, utcnow

FOOTER_LINE = "This summary was automatically generated by your RSS Feed Digest"

_HEADING_RE = re.compile(r"^(#{1,3}) (.*)$")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"(?<!\*)\*(?!\*)(.+?)(?<!\*)\*(?!\*)")
_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n")

EMAIL_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ title }}</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f9f9f9; }
        .container { background: white; padding: 30px; border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }
        .header { border-bottom: 2px solid #3b82f6; padding-bottom: 20px; margin-bottom: 30px; }
        .header h1 { color: #1f2937; margin: 0; font-size: 24px; }
        .meta { color: #6b7280; font-size: 14px; margin-top: 10px; }
        .stats { background: #f3f4f6; padding: 15px; border-radius: 6px; margin: 20px 0; }
        .stats span { margin-right: 20px; }
        .content { font-size: 16px; line-height: 1.7; }
        .content h1, .content h2, .content h3 { color: #1f2937; margin-top: 25px; margin-bottom: 15px; }
        .footer { margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 14px; text-align: center; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>{{ title }}</h1>
            <div class="meta">Generated on {{ generated_date }} at {{ generated_time }}</div>
            <div class="stats">
                <span><strong>{{ article_count }}</strong> articles</span>
                <span><strong>{{ source_count }}</strong> sources</span>
            </div>
        </div>
        <div class="content">
{{ body_html | safe }}
        </div>
        <div class="footer">
            <p>{{ footer }}</p>
            <p>Powered by AI &bull; {{ year }}</p>
        </div>
    </div>
</body>
</html>
"""

_env = Environment(autoescape=True)
_email_template = _env.from_string(EMAIL_TEMPLATE)


def markdown_to_html(markdown: str) -> str:
    """Convert the Markdown subset used in digests to HTML.

    Supports ``#``/``##``/``###`` headings, ``**bold**``, ``*italic*`` and
    blank-line paragraph breaks. Other lines inside a paragraph are joined
    with ``<br>``.
    """
    blocks = []
    for paragraph in _PARAGRAPH_BREAK_RE.split(markdown.strip()):
        lines: list[str] = []
        for line in paragraph.split("\n"):
            heading = _HEADING_RE.match(line)
            if heading:
                if lines:
                    blocks.append(f"<p>{'<br>'.join(lines)}</p>")
                    lines = []
                level = len(heading.group(1))
                blocks.append(f"<h{level}>{_inline(heading.group(2))}</h{level}>")
            elif line.strip():
                lines.append(_inline(line))
        if lines:
            blocks.append(f"<p>{'<br>'.join(lines)}</p>")
    return "\n".join(blocks)


def _inline(text: str) -> str:
    text = html.escape(text, quote=False)
    text = _BOLD_RE.sub(r"<strong>\1</strong>", text)
    return _ITALIC_RE.sub(r"<em>\1</em>", text)


def render_subject(template: str, today: date | None = None) -> str:
    """Substitute the ``{date}`` placeholder in a subject template."""
    today = today or date.today()
    return template.replace("{date}", today.isoformat())


def _timestamp_parts(moment: datetime) -> tuple[str, str]:
    return moment.strftime("%Y-%m-%d"), moment.strftime("%H:%M UTC")


def render_html(digest: Digest, now: datetime | None = None) -> str:
    """Render a digest as a standalone HTML email document."""
    now = now or utcnow()
    generated_date, generated_time = _timestamp_parts(digest.generated_at)
    return _email_template.render(
        title=digest.title,
        generated_date=generated_date,
        generated_time=generated_time,
        article_count=digest.article_count,
        source_count=digest.source_count,
        body_html=markdown_to_html(digest.body),
        footer=FOOTER_LINE,
        year=now.year,
    )


def render_text(digest: Digest, now: datetime | None = None) -> str:
    """Render the plain-text counterpart of ``render_html``."""
    now = now or utcnow()
    generated_date, generated_time = _timestamp_parts(digest.generated_at)
    return "\n".join(
        [
            digest.title,
            "",
            f"Generated on {generated_date} at {generated_time}",
            f"Articles: {digest.article_count} | Sources: {digest.source_count}",
            "",
            digest.body,
            "",
            "---",
            FOOTER_LINE,
            f"Powered by AI • {now.year}",
        ]
    )
