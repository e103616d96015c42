from __future__ import annotations

import re
import secrets
from datetime import datetime
from email.utils import formataddr
from html import escape

from ..models import utcnow
from ..schemas import DigestItem, OutboundMail, Recipient
from ..time_utils import format_long_date, format_short_date

SENDER_NAME = "Feed Digest"
MAILER_NAME = "FeedDigest/1.0"
SUBJECT_MAX_LENGTH = 70
SUMMARY_MAX_CHARS = 200
WRAP_WIDTH = 70

_BANNER = "═" * 59
_RULE = "─" * 59
_NON_PRINTABLE_ASCII = re.compile(r"[^\x20-\x7E]")


def sanitize_header(value: str) -> str:
    return value.replace("\r", "").replace("\n", "").strip()


def email_domain(address: str) -> str:
    _, _, domain = address.rpartition("@")
    return domain or "localhost"


def generate_message_id(from_addr: str, now: datetime | None = None) -> str:
    moment = now or utcnow()
    return f"<{int(moment.timestamp() * 1000)}-{secrets.token_hex(8)}@{email_domain(from_addr)}>"


def build_subject(item_count: int, now: datetime, tz_name: str | None = None) -> str:
    day = format_short_date(now, tz_name)
    subject = "Daily Digest"
    if item_count > 0:
        noun = "new article" if item_count == 1 else "new articles"
        subject = f"Daily Digest: {item_count} {noun}"
    subject += f" - {day}"
    if len(subject) > SUBJECT_MAX_LENGTH:
        subject = f"Daily Digest - {day}"
    return _NON_PRINTABLE_ASCII.sub("", subject).strip()


def wrap_text(text: str, width: int = WRAP_WIDTH) -> str:
    lines: list[str] = []
    current = ""
    for word in text.split():
        if len(current + word) > width:
            if current:
                lines.append(current.strip())
            current = word + " "
        else:
            current += word + " "
    if current:
        lines.append(current.strip())
    return "\n  ".join(lines)


def group_by_feed(items: list[DigestItem]) -> dict[str, list[DigestItem]]:
    grouped: dict[str, list[DigestItem]] = {}
    for item in items:
        grouped.setdefault(item.feed_title, []).append(item)
    return grouped


def _meta_parts(item: DigestItem, tz_name: str | None) -> list[str]:
    parts = []
    if item.author:
        parts.append(f"By: {item.author}")
    if item.published_at is not None:
        parts.append(format_long_date(item.published_at, tz_name))
    return parts


def render_text(
    recipient: Recipient,
    items: list[DigestItem],
    site_url: str,
    unsubscribe_url: str,
    now: datetime,
    tz_name: str | None = None,
) -> str:
    out = [
        f"{_BANNER}\n",
        "  FEED DIGEST - DAILY DIGEST\n",
        f"  {format_long_date(now, tz_name)}\n",
        f"{_BANNER}\n\n",
        f"Hello {recipient.display_name},\n\n",
        "Here are the latest updates from your feeds:\n\n",
    ]

    for feed_title, feed_items in group_by_feed(items).items():
        out.append(f"{_RULE}\n{feed_title.upper()}\n{_RULE}\n\n")
        for item in feed_items:
            out.append(f"• {item.title}\n  {item.url}\n")
            if item.summary:
                out.append(f"\n  {wrap_text(item.summary[:SUMMARY_MAX_CHARS])}\n")
                if len(item.summary) > SUMMARY_MAX_CHARS:
                    out.append("  ...\n")
            out.append("\n")
            meta = _meta_parts(item, tz_name)
            if meta:
                out.append(f"  {' | '.join(meta)}\n")
            out.append("\n")

    out.extend(
        [
            f"{_RULE}\n\n",
            f"Visit Feed Digest: {site_url}\n\n",
            f"To unsubscribe: {unsubscribe_url}\n\n",
            f"{_BANNER}\n",
            "Feed Digest - RSS aggregation, once a day\n",
            f"{_BANNER}\n",
        ]
    )
    return "".join(out)


def render_html(
    recipient: Recipient,
    items: list[DigestItem],
    site_url: str,
    unsubscribe_url: str,
    now: datetime,
    tz_name: str | None = None,
) -> str:
    sections = []
    for feed_title, feed_items in group_by_feed(items).items():
        rows = []
        for item in feed_items:
            summary = ""
            if item.summary:
                text = item.summary[:SUMMARY_MAX_CHARS]
                if len(item.summary) > SUMMARY_MAX_CHARS:
                    text += "..."
                summary = f'<p style="margin:4px 0;color:#444;">{escape(text)}</p>'
            meta = _meta_parts(item, tz_name)
            meta_html = f'<p style="margin:4px 0;color:#888;font-size:12px;">{escape(" | ".join(meta))}</p>' if meta else ""
            rows.append(
                '<li style="margin-bottom:16px;">'
                f'<a href="{escape(item.url, quote=True)}" style="font-weight:bold;">{escape(item.title)}</a>'
                f"{summary}{meta_html}</li>"
            )
        sections.append(
            f'<h2 style="font-size:16px;border-bottom:1px solid #ddd;">{escape(feed_title)}</h2>'
            f'<ul style="list-style:none;padding:0;">{"".join(rows)}</ul>'
        )

    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"><title>Daily Digest</title></head>'
        '<body style="font-family:Arial,sans-serif;max-width:640px;margin:0 auto;">'
        f"<h1>Daily Digest</h1><p>{escape(format_long_date(now, tz_name))}</p>"
        f"<p>Hello {escape(recipient.display_name)},</p>"
        "<p>Here are the latest updates from your feeds:</p>"
        f"{''.join(sections)}"
        '<hr><p style="font-size:12px;color:#888;">'
        f'<a href="{escape(site_url, quote=True)}">Visit Feed Digest</a> | '
        f'<a href="{escape(unsubscribe_url, quote=True)}">Unsubscribe</a></p>'
        "</body></html>"
    )


class EmailBuilder:
    def __init__(
        self,
        from_addr: str,
        reply_to: str | None,
        site_url: str,
        tz_name: str | None = None,
    ) -> None:
        self.from_addr = sanitize_header(from_addr)
        self.reply_to = sanitize_header(reply_to or from_addr)
        self.site_url = site_url.rstrip("/")
        self.tz_name = tz_name

    def unsubscribe_url(self, token: str) -> str:
        return f"{self.site_url}/unsubscribe/{token}"

    def build(
        self,
        recipient: Recipient,
        items: list[DigestItem],
        unsubscribe_token: str,
        now: datetime | None = None,
    ) -> OutboundMail:
        moment = now or utcnow()
        unsubscribe_url = self.unsubscribe_url(unsubscribe_token)
        domain = email_domain(self.from_addr)
        headers = {
            "List-Unsubscribe": f"<{unsubscribe_url}>, <mailto:unsubscribe@{domain}?subject=Unsubscribe>",
            "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
            "MIME-Version": "1.0",
            "X-Mailer": MAILER_NAME,
            "X-Auto-Response-Suppress": "All",
            "Importance": "normal",
            "X-Priority": "3",
            "Return-Path": self.from_addr,
        }
        return OutboundMail(
            from_addr=formataddr((SENDER_NAME, self.from_addr)),
            to=sanitize_header(recipient.email),
            reply_to=self.reply_to,
            subject=sanitize_header(build_subject(len(items), moment, self.tz_name)),
            html=render_html(recipient, items, self.site_url, unsubscribe_url, moment, self.tz_name),
            text=render_text(recipient, items, self.site_url, unsubscribe_url, moment, self.tz_name),
            message_id=generate_message_id(self.from_addr, moment),
            date=moment,
            headers=headers,
        )
