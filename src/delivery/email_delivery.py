"""
Email Delivery channel
"""
from typing import List, Dict
from email.message import EmailMessage
import aiosmtplib
import html as html_escape

from core.entities import Alert
from delivery.base import AlertChannel


class EmailDelivery(AlertChannel):
    name = "email"

    # Default color scheme (used if no colors provided)
    DEFAULT_COLORS = {
        "background": "#f8fafc",
        "card_bg": "#ffffff",
        "text_primary": "#1e293b",
        "text_secondary": "#64748b",
        "border": "#e2e8f0",
        "info": "#6366f1",
        "warning": "#f59e0b",
        "critical": "#dc2626",
    }

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int,
        username: str,
        password: str,
        sender: str,
        recipient: str,
        colors: Dict[str, str] = None,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.sender = sender
        self.recipient = recipient
        self.colors = {**self.DEFAULT_COLORS, **(colors or {})}

    def _build_html_template(self, run_date: str, alerts: List[Alert]) -> str:
        """One card per alert, edged in its severity colour."""
        c = self.colors

        cards = []
        for alert in alerts:
            edge = c.get(alert.severity, c["info"])
            cards.append(f'''
            <div style="background-color: {c['card_bg']}; border-radius: 8px;
                        padding: 16px 20px; margin-bottom: 14px;
                        border-left: 4px solid {edge};">
                <p style="margin: 0 0 4px 0; font-size: 12px; color: {edge};
                          text-transform: uppercase; font-weight: 600;">
                    {html_escape.escape(alert.severity)} · {html_escape.escape(alert.alert_type)}
                </p>
                <h2 style="margin: 0 0 8px 0; color: {c['text_primary']}; font-size: 17px;">
                    {html_escape.escape(alert.title)}
                </h2>
                <p style="margin: 0; color: {c['text_secondary']}; font-size: 14px; line-height: 1.5;">
                    {html_escape.escape(alert.description)}
                </p>
            </div>
            ''')

        return f'''
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Pain Radar alerts</title>
</head>
<body style="margin: 0; padding: 0; background-color: {c['background']};
             font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif;">
    <div style="max-width: 640px; margin: 0 auto; padding: 20px;">
        <h1 style="color: {c['text_primary']}; font-size: 22px;">Pain Radar alerts</h1>
        <p style="color: {c['text_secondary']}; font-size: 14px;">
            {len(alerts)} new alert(s) · {html_escape.escape(run_date)}
        </p>
        {"".join(cards)}
    </div>
</body>
</html>
'''

    def _build_plain_text(self, run_date: str, alerts: List[Alert]) -> str:
        lines = [
            f"{'='*60}",
            f"Pain Radar alerts - {run_date}",
            f"{'='*60}",
            "",
        ]
        for alert in alerts:
            lines.extend([
                f"[{alert.severity.upper()}] {alert.title}",
                f"  {alert.description}",
                f"  ({alert.alert_type}, {alert.entity_key})",
                "",
            ])
        return "\n".join(lines)

    async def deliver(
        self,
        *,
        run_date: str,
        alerts: List[Alert],
    ) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = self.recipient
        msg["Subject"] = f"Pain Radar: {len(alerts)} new alert(s) – {run_date}"

        msg.set_content(self._build_plain_text(run_date, alerts))
        msg.add_alternative(self._build_html_template(run_date, alerts), subtype="html")

        await aiosmtplib.send(
            msg,
            hostname=self.smtp_host,
            port=self.smtp_port,
            username=self.username,
            password=self.password,
            start_tls=True,
        )
