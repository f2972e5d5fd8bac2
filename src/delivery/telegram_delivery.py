from typing import List
from telegram import Bot, LinkPreviewOptions
from telegram.helpers import escape_markdown

from core.entities import Alert
from delivery.base import AlertChannel

SEVERITY_MARKS = {"critical": "🔴", "warning": "🟠", "info": "🔵"}


class TelegramDelivery(AlertChannel):
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str):
        self.bot = Bot(token=bot_token)
        self.chat_id = chat_id

    async def deliver(
        self,
        *,
        run_date: str,
        alerts: List[Alert],
    ) -> None:
        header = f"*Pain Radar alerts – {escape_markdown(run_date)}*\n\n"
        message = [header]

        for alert in alerts:
            mark = SEVERITY_MARKS.get(alert.severity, "")
            message.append(f"{mark} *{escape_markdown(alert.title)}*")
            message.append(escape_markdown(alert.description))
            message.append("\n")

        await self.bot.send_message(
            chat_id=self.chat_id,
            text="\n".join(message),
            parse_mode="Markdown",
            link_preview_options=LinkPreviewOptions(is_disabled=True),
        )
