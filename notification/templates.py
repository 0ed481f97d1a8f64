"""Email templates per notification type."""

import html
from dataclasses import dataclass
from typing import Dict, Any, Optional

from notification.models import NotificationType
from notification.sanitizer import sanitize_html, sanitize_fields

DEFAULT_TEMPLATE_ID = 'template_default'

TEMPLATE_IDS: Dict[NotificationType, str] = {
    NotificationType.TASK_ASSIGNED: 'template_task_assigned',
    NotificationType.DUE_DATE_REMINDER: 'template_due_date_reminder',
    NotificationType.TASK_OVERDUE: 'template_task_overdue',
    NotificationType.MENTION: 'template_mention',
}

# Heading and call-to-action label per template.
_TEMPLATE_COPY: Dict[str, Dict[str, str]] = {
    'template_task_assigned': {'heading': 'A task was assigned to you', 'cta': 'Open task'},
    'template_due_date_reminder': {'heading': 'A task is due soon', 'cta': 'Review task'},
    'template_task_overdue': {'heading': 'A task is overdue', 'cta': 'Review task'},
    'template_mention': {'heading': 'You were mentioned', 'cta': 'View conversation'},
    DEFAULT_TEMPLATE_ID: {'heading': 'New notification', 'cta': 'Open'},
}

# Metadata keys rendered as detail rows, in display order.
_DETAIL_FIELDS = (
    ('taskTitle', 'Task'),
    ('projectName', 'Project'),
    ('dueDate', 'Due'),
    ('assignedBy', 'From'),
)


def template_id_for(notification_type: NotificationType) -> str:
    return TEMPLATE_IDS.get(notification_type, DEFAULT_TEMPLATE_ID)


@dataclass
class EmailContent:
    subject: str
    html_body: str
    text_body: str
    template_id: str


def render_email(
    notification_type: NotificationType,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None
) -> EmailContent:
    """
    Render the email for a notification.

    Every interpolated value goes through the allow-list sanitizer first; the
    subject line is plain text and is stripped of markup entirely.
    """
    template_id = template_id_for(notification_type)
    copy = _TEMPLATE_COPY.get(template_id, _TEMPLATE_COPY[DEFAULT_TEMPLATE_ID])
    fields = sanitize_fields(dict(data or {}))
    safe_title = sanitize_html(title)
    safe_message = sanitize_html(message)

    rows = []
    text_rows = []
    for key, label in _DETAIL_FIELDS:
        value = fields.get(key)
        if value:
            rows.append(f'        <div class="detail"><strong>{label}:</strong> {value}</div>\n')
            text_rows.append(f"{label}: {html.unescape(_strip_tags(str(value)))}")

    link = ''
    url = fields.get('url')
    if isinstance(url, str) and url.startswith(('http://', 'https://')):
        link = f'        <p><a class="cta" href="{html.escape(url, quote=True)}">{copy["cta"]}</a></p>\n'
        text_rows.append(f"{copy['cta']}: {url}")

    html_body = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .header {{ background: #1976d2; color: white; padding: 20px; border-radius: 8px 8px 0 0; }}
        .content {{ padding: 20px; background: #f9f9f9; }}
        .detail {{ margin: 5px 0; font-size: 14px; }}
        .footer {{ text-align: center; padding: 15px; color: #666; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="header">
        <h1>{copy['heading']}</h1>
    </div>
    <div class="content">
        <h2>{safe_title}</h2>
        <p>{safe_message}</p>
{''.join(rows)}{link}    </div>
    <div class="footer">
        <p>You are receiving this because of your notification settings.</p>
    </div>
</body>
</html>"""

    plain_message = html.unescape(_strip_tags(safe_message))
    text_body = "\n".join([html.unescape(_strip_tags(safe_title)), "", plain_message, *text_rows])

    return EmailContent(
        subject=html.unescape(_strip_tags(safe_title)),
        html_body=html_body,
        text_body=text_body,
        template_id=template_id,
    )


def _strip_tags(value: str) -> str:
    """Drop the allow-listed tags left by the sanitizer, keeping their text."""
    out = []
    in_tag = False
    for ch in value:
        if ch == '<':
            in_tag = True
        elif ch == '>' and in_tag:
            in_tag = False
        elif not in_tag:
            out.append(ch)
    return ''.join(out)
