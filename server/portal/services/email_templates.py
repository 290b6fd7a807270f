from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from sqlalchemy.orm import Session

from portal.core.config import settings
from portal.models.email import EmailTemplate
from portal.services.template_engine import extract_variables, find_missing_variables, process_template

ACCENT = "#111827"
BG = "#f5f5f7"
CARD = "#ffffff"
TEXT = "#0f172a"
MUTED = "#6b7280"
BRAND_NAME = settings.EMAIL_FROM_NAME or "Cadet Portal"

_TAG_PATTERN = re.compile(r"<[^>]+>")
_BREAK_PATTERN = re.compile(r"<\s*(br|/p|/div|/li|/h[1-6])\s*/?>", re.IGNORECASE)


class TemplateNotFoundError(LookupError):
    pass


@dataclass
class RenderedEmail:
    subject: str
    body: str
    html: str
    text: str
    missing_variables: list[str] = field(default_factory=list)


def template_variables(subject: str | None, body: str | None) -> list[str]:
    return extract_variables(f"{subject or ''} {body or ''}")


def _wrap_brand_email(
    *,
    headline: str,
    body_html: str,
    preview_text: str | None = None,
    footer_lines: Sequence[str] | None = None,
) -> str:
    preview = preview_text or headline
    footer_html = ""
    if footer_lines:
        footer_html = (
            '<p style="margin:20px 0 0 0; color:{muted}; font-size:13px; line-height:1.5;">{footer}</p>'.format(
                muted=MUTED, footer="<br>".join(footer_lines)
            )
        )
    return f"""<!doctype html>
<html>
  <head>
    <meta charset="UTF-8" />
    <title>{html.escape(headline)}</title>
  </head>
  <body style="margin:0; padding:0; background:{BG}; color:{TEXT}; font-family:'Inter','Segoe UI',Arial,sans-serif;">
    <div style="display:none; max-height:0; overflow:hidden; opacity:0; color:transparent;">{html.escape(preview)}</div>
    <table role="presentation" cellpadding="0" cellspacing="0" width="100%" style="background:{BG}; padding:32px 0;">
      <tr>
        <td align="center">
          <table role="presentation" cellpadding="0" cellspacing="0" width="620" style="background:{CARD}; border-radius:18px; overflow:hidden;">
            <tr>
              <td style="background:{ACCENT}; padding:20px 24px; color:#f8fafc;">
                <div style="font-size:12px; letter-spacing:0.16em; text-transform:uppercase; opacity:0.8;">{BRAND_NAME}</div>
                <div style="font-size:22px; font-weight:700; margin-top:6px;">{html.escape(headline)}</div>
              </td>
            </tr>
            <tr>
              <td style="padding:28px;">
                <div style="font-size:15px; line-height:1.6; color:{TEXT};">
                  {body_html}
                </div>
                {footer_html}
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>"""


def html_to_text(body_html: str) -> str:
    text = _BREAK_PATTERN.sub("\n", body_html)
    text = _TAG_PATTERN.sub("", text)
    lines = [line.strip() for line in html.unescape(text).splitlines()]
    return "\n".join(line for line in lines if line).strip() + "\n"


def brand_message(subject: str, body: str) -> tuple[str, str]:
    html_body = _wrap_brand_email(
        headline=subject or BRAND_NAME,
        body_html=body,
        footer_lines=[f"Sent automatically by the {BRAND_NAME} system."],
    )
    return html_body, html_to_text(body)


def render_email(subject: str, body: str, record: Mapping[str, Any]) -> RenderedEmail:
    """Resolve placeholders in ``subject`` and ``body`` against ``record``."""

    rendered_subject = process_template(subject, record) or ""
    rendered_body = process_template(body, record) or ""
    missing = find_missing_variables(f"{subject or ''} {body or ''}", record)
    html_body, text_body = brand_message(rendered_subject, rendered_body)
    return RenderedEmail(
        subject=rendered_subject,
        body=rendered_body,
        html=html_body,
        text=text_body,
        missing_variables=missing,
    )


def get_template(db: Session, template_id: int) -> EmailTemplate:
    template = db.get(EmailTemplate, template_id)
    if template is None:
        raise TemplateNotFoundError(f"Email template {template_id} not found")
    return template


def render_stored_template(template: EmailTemplate, record: Mapping[str, Any]) -> RenderedEmail:
    return render_email(template.subject, template.body, record)
