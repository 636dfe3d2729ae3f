"""Email service: SMTP delivery and the reminder/overdue templates."""

import asyncio
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from html import escape
from typing import Any

from todo_api.core.clock import as_utc
from todo_api.core.config import Settings, settings

logger = logging.getLogger(__name__)

SKIPPED_NO_CREDENTIALS = "skipped-no-credentials"

PRIORITY_COLORS = {
    "high": "#ff6b6b",
    "medium": "#ffb74d",
    "low": "#81c784",
}
DEFAULT_COLOR = "#667eea"


class EmailServiceError(Exception):
    pass


def _field(task: Any, name: str, default=None):
    if isinstance(task, dict):
        return task.get(name, default)
    return getattr(task, name, default)


def _one_line(value: str) -> str:
    """Collapse CR/LF and runs of whitespace; header values must be a single line."""
    return " ".join((value or "").split())


def _long_date(value: datetime | None) -> str:
    value = as_utc(value)
    if value is None:
        return "no due date"
    return f"{value.strftime('%A, %B')} {value.day}, {value.year}"


def _short_date(value: datetime | None) -> str:
    value = as_utc(value)
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "no due date"


_BASE_STYLE = """
    body { font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; margin: 0; padding: 0; background-color: #f5f5f5; }
    .container { max-width: 600px; margin: 0 auto; background-color: white; border-radius: 10px; overflow: hidden; }
    .header { background: %(header)s; color: white; padding: 30px; text-align: center; }
    .content { padding: 30px; }
    .todo-card { background: %(card)s; border-radius: 8px; padding: 20px; margin: 20px 0; border-left: 4px solid %(accent)s; }
    .badge { display: inline-block; padding: 4px 12px; border-radius: 20px; font-size: 12px; font-weight: bold; text-transform: uppercase; background: %(accent)s; color: white; }
    .due-date { font-size: 18px; font-weight: bold; color: #e74c3c; margin: 10px 0; }
    .footer { background: #f8f9fa; padding: 20px; text-align: center; color: #666; font-size: 14px; }
    .btn { display: inline-block; padding: 12px 24px; background: %(button)s; color: white; text-decoration: none; border-radius: 6px; font-weight: bold; }
"""


class EmailService:
    """Thin SMTP wrapper. One connection per message, STARTTLS + login."""

    def __init__(self, config: Settings | None = None):
        self.config = config or settings

    def is_configured(self) -> bool:
        return bool(self.config.smtp_user and self.config.smtp_password)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _build_message(self, to: str, subject: str, html: str, text: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = _one_line(subject)
        msg["From"] = formataddr((self.config.email_from_name, self.config.smtp_user))
        msg["To"] = to
        msg["Message-ID"] = make_msgid(domain=self.config.smtp_user.rpartition("@")[2] or None)
        msg.set_content(text or subject)
        msg.add_alternative(html, subtype="html")
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        cfg = self.config
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout_seconds) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_password)
            server.send_message(msg)

    async def send_email(self, to: str, subject: str, html: str, text: str = "") -> str:
        """Send one message; returns its Message-ID."""
        if not self.is_configured():
            logger.warning("SMTP credentials missing; skipping email to %s", to)
            return SKIPPED_NO_CREDENTIALS

        try:
            msg = self._build_message(to, subject, html, text)
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError, ValueError) as e:
            logger.error("Failed to send email to %s: %s", to, e)
            raise EmailServiceError(f"Failed to send email: {e}") from e

        logger.info("Email sent to %s (%s)", to, msg["Message-ID"])
        return msg["Message-ID"]

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def send_due_date_reminder(self, email: str, username: str, task: Any) -> str:
        subject = f'Reminder: "{_field(task, "title", "")}" is due soon!'
        return await self.send_email(
            email,
            subject,
            self.render_due_date_reminder_html(username, task),
            self.render_due_date_reminder_text(username, task),
        )

    async def send_overdue_notification(self, email: str, username: str, task: Any) -> str:
        subject = f'Overdue: "{_field(task, "title", "")}" was due!'
        return await self.send_email(
            email,
            subject,
            self.render_overdue_html(username, task),
            self.render_overdue_text(username, task),
        )

    def _page(self, title: str, style: dict, header: str, body: str, footer: str) -> str:
        return (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
            f"<title>{title}</title><style>{_BASE_STYLE % style}</style></head>"
            f"<body><div class=\"container\"><div class=\"header\">{header}</div>"
            f"<div class=\"content\">{body}</div>"
            f"<div class=\"footer\">{footer}</div></div></body></html>"
        )

    def render_due_date_reminder_html(self, username: str, task: Any) -> str:
        priority = _field(task, "priority", "medium") or "medium"
        accent = PRIORITY_COLORS.get(priority, DEFAULT_COLOR)
        description = _field(task, "description", "")
        tags = _field(task, "tags", None) or []
        url = escape(self.config.frontend_url)

        body = (
            f"<h2>Hi {escape(username)}!</h2>"
            "<p>This is a friendly reminder that you have a todo item due soon:</p>"
            "<div class=\"todo-card\">"
            f"<h3>{escape(_field(task, 'title', ''))}</h3>"
            + (f"<p>{escape(description)}</p>" if description else "")
            + f"<div class=\"badge\">{escape(priority)} Priority</div>"
            f"<div class=\"due-date\">Due: {_long_date(_field(task, 'due_date'))}</div>"
            + (f"<p><strong>Tags:</strong> {escape(', '.join(tags))}</p>" if tags else "")
            + "</div>"
            "<p>Log in to your Todo app to mark it as completed or update the due date if needed.</p>"
            f"<a href=\"{url}\" class=\"btn\">Open Todo App</a>"
        )
        return self._page(
            "Todo Reminder",
            {"header": "linear-gradient(135deg, #667eea 0%, #764ba2 100%)", "card": "#f8f9fa",
             "accent": accent, "button": DEFAULT_COLOR},
            "<h1>Todo Reminder</h1><p>Don't forget about your upcoming task!</p>",
            body,
            "<p>This is an automated reminder from your Todo App.</p>"
            "<p>You can manage your notification preferences in your account settings.</p>",
        )

    def render_due_date_reminder_text(self, username: str, task: Any) -> str:
        description = _field(task, "description", "")
        tags = _field(task, "tags", None) or []
        lines = [
            f"Hi {username}!",
            "",
            f'This is a reminder that your todo item "{_field(task, "title", "")}" '
            f"is due on {_short_date(_field(task, 'due_date'))}.",
            "",
            f"Priority: {_field(task, 'priority', 'medium')}",
        ]
        if description:
            lines.append(f"Description: {description}")
        if tags:
            lines.append(f"Tags: {', '.join(tags)}")
        lines += [
            "",
            "Don't forget to complete this task on time!",
            "",
            f"Visit your Todo App: {self.config.frontend_url}",
        ]
        return "\n".join(lines)

    def render_overdue_html(self, username: str, task: Any) -> str:
        description = _field(task, "description", "")
        url = escape(self.config.frontend_url)
        body = (
            f"<h2>Hi {escape(username)}!</h2>"
            "<p>Your todo item is now overdue. Please take action as soon as possible:</p>"
            "<div class=\"todo-card\">"
            f"<h3>{escape(_field(task, 'title', ''))}</h3>"
            + (f"<p>{escape(description)}</p>" if description else "")
            + "<div class=\"badge\">Overdue</div>"
            f"<div class=\"due-date\">Was due: {_long_date(_field(task, 'due_date'))}</div>"
            "</div>"
            "<p>Log in to your Todo app to complete this task or reschedule it.</p>"
            f"<a href=\"{url}\" class=\"btn\">Complete Task Now</a>"
        )
        return self._page(
            "Overdue Todo",
            {"header": "linear-gradient(135deg, #e74c3c 0%, #c0392b 100%)", "card": "#fff5f5",
             "accent": "#e74c3c", "button": "#e74c3c"},
            "<h1>Overdue Task</h1><p>You have an overdue todo item!</p>",
            body,
            "<p>This is an automated notification from your Todo App.</p>",
        )

    def render_overdue_text(self, username: str, task: Any) -> str:
        description = _field(task, "description", "")
        lines = [
            f"Hi {username}!",
            "",
            f'Your todo item "{_field(task, "title", "")}" is now OVERDUE. '
            f"It was due on {_short_date(_field(task, 'due_date'))}.",
        ]
        if description:
            lines += ["", f"Description: {description}"]
        lines += [
            "",
            "Please complete this task as soon as possible or update the due date.",
            "",
            f"Visit your Todo App: {self.config.frontend_url}",
        ]
        return "\n".join(lines)


_service: EmailService | None = None


def get_email_service() -> EmailService:
    global _service
    if _service is None:
        _service = EmailService()
    return _service
