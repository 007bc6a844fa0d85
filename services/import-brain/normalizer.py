"""Content normalization for forwarded emails.

Strips markup from HTML bodies, decodes base64 attachment payloads and
guesses which document type an email carries from its subject and body.
"""

import base64
import binascii
import logging
import re

from bs4 import BeautifulSoup

from config import settings
from errors import ValidationError
from models import EmailAttachment, EmailMessage

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

# Checked in order; first match wins.
_EMAIL_TYPE_RULES: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = [
    # (document type, subject keywords, subject-or-body phrases)
    ("dbs_certificate", (), ("dbs", "disclosure and barring", "criminal record check")),
    ("donation", ("donation", "gift"), ("thank you for your donation", "receipt for your donation")),
    ("expense", ("receipt", "invoice", "expense"), ("payment confirmation",)),
    ("overseas_transfer", (), ("international transfer", "wire transfer", "swift", "overseas payment")),
    ("bank_statement", ("statement", "account summary"), ("opening balance", "closing balance")),
]


def strip_html(html: str) -> str:
    """Return the visible text of an HTML fragment with whitespace collapsed."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = soup.get_text(" ")
    return re.sub(r"\s+", " ", text).strip()


def decode_attachment(attachment: EmailAttachment, max_bytes: int | None = None) -> bytes:
    """Decode a base64 attachment payload, enforcing the size ceiling."""
    limit = max_bytes if max_bytes is not None else settings.MAX_ATTACHMENT_BYTES
    try:
        payload = base64.b64decode(attachment.content, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Attachment {attachment.filename} is not valid base64") from e

    if not payload:
        raise ValidationError(f"Attachment {attachment.filename} is empty")
    if len(payload) > limit:
        raise ValidationError(
            f"Attachment {attachment.filename} is too large ({len(payload)} bytes, max {limit})"
        )
    return payload


def is_supported_image(content_type: str) -> bool:
    return content_type.split(";")[0].strip().lower() in SUPPORTED_IMAGE_TYPES


def build_email_content(email: EmailMessage) -> str:
    """Flatten an email into the plain-text block sent for extraction."""
    parts = [
        f"Subject: {email.subject}",
        f"From: {email.from_address}",
        "Content:",
        email.text_content.strip(),
    ]
    if email.html_content:
        html_text = strip_html(email.html_content)
        if html_text:
            parts.append(f"HTML Content: {html_text}")
    return "\n\n".join(p for p in parts if p)


def detect_email_type(email: EmailMessage) -> str:
    """Guess the document type from keywords; 'unknown' needs manual handling."""
    subject = email.subject.lower()
    content = f"{email.text_content} {email.subject}".lower()
    if email.html_content and not email.text_content.strip():
        content = f"{strip_html(email.html_content)} {email.subject}".lower()

    for doc_type, subject_keywords, phrases in _EMAIL_TYPE_RULES:
        if any(k in subject for k in subject_keywords) or any(p in content for p in phrases):
            return doc_type
    return "unknown"
