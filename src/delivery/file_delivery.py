"""
File delivery channel
"""
import json
from dataclasses import asdict
from pathlib import Path
from typing import List

from core.entities import Alert
from delivery.base import AlertChannel


class FileDelivery(AlertChannel):
    name = "file"

    def __init__(self, output_dir: str = "output"):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    async def deliver(
        self,
        *,
        run_date: str,
        alerts: List[Alert],
    ) -> None:
        base = self.output_dir / f"alerts_{run_date}"

        json_path = base.with_suffix(".json")
        md_path = base.with_suffix(".md")

        json_path.write_text(
            json.dumps(
                [asdict(alert) for alert in alerts],
                indent=2,
            ),
            encoding="utf-8",
        )

        md_lines = list[str]()
        for alert in alerts:
            md_lines.append(f"## [{alert.severity.upper()}] {alert.title}")
            md_lines.append(alert.description)
            md_lines.append(f"**Type:** {alert.alert_type}  ")
            md_lines.append(f"**Key:** `{alert.entity_key}`")
            md_lines.append("\n")

        md_path.write_text("\n".join(md_lines), encoding="utf-8")
