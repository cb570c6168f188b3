"""Parsers for Falco alerts in text or JSON form."""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

TEXT_EVENT_RE = re.compile(r"^(\d+:\d+:\d+\.\d+):\s+(\w+)\s+(.*?)\s*\(([^()]*)\)\s*$")
PROCESS_KEYS = ("command", "shell", "proc", "proc.name", "proc.cmdline")
USER_KEYS = ("user", "user.name")


class FalcoOutputParser:
    """Turns Falco alert output into intermediate event dicts."""

    @staticmethod
    def parse(payload: str) -> List[Dict[str, Any]]:
        """Parse a payload, picking JSON or text handling by its first character."""
        if payload.lstrip().startswith("{"):
            return FalcoOutputParser.parse_json_events(payload)
        return FalcoOutputParser.parse_text_events(payload)

    @staticmethod
    def parse_text_events(text: str) -> List[Dict[str, Any]]:
        """Parse ``<time>: <Priority> <description> (<k=v ...>)`` lines.

        Text output carries no date, so today's UTC date is assumed.
        """
        events: List[Dict[str, Any]] = []
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        for line in text.splitlines():
            match = TEXT_EVENT_RE.match(line.strip())
            if not match:
                continue

            time_str, priority, description, blob = match.groups()
            details: Dict[str, str] = {}
            for part in blob.split():
                if "=" not in part:
                    continue
                key, value = part.split("=", 1)
                details[key] = value

            user = next((details[k] for k in USER_KEYS if k in details), None)
            process = next((details[k] for k in PROCESS_KEYS if k in details), None)

            events.append({
                "timestamp": f"{today}T{time_str[:8]}Z",
                "priority": priority.lower(),
                "rule": description,
                "description": description,
                "process": process,
                "user": user,
                "details": details,
            })
        return events

    @staticmethod
    def parse_json_events(payload: str) -> List[Dict[str, Any]]:
        """Decode JSON alert output.

        A document carrying an ``events`` array is returned verbatim.
        Otherwise the payload is treated as JSON lines, one alert per line;
        lines that fail to decode are skipped.
        """
        try:
            document = json.loads(payload)
        except json.JSONDecodeError:
            document = None

        if isinstance(document, dict):
            if isinstance(document.get("events"), list):
                return document["events"]
            return [document]
        if isinstance(document, list):
            return [item for item in document if isinstance(item, dict)]

        events: List[Dict[str, Any]] = []
        for line in payload.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError as e:
                logger.debug(f"Skipping undecodable Falco line: {e}")
                continue
            if isinstance(item, dict):
                events.append(item)
        return events

    @staticmethod
    def format_event(event: Dict[str, Any], fmt: str = "text") -> str:
        """Render an event back into Falco's text or JSON alert form."""
        if fmt == "json":
            return json.dumps(event)

        timestamp = str(event.get("timestamp") or event.get("time") or "")
        priority = str(event.get("priority", "notice")).capitalize()
        description = event.get("description") or event.get("output") or event.get("rule", "")
        details = event.get("details") or event.get("output_fields") or {}
        pairs = " ".join(f"{k}={v}" for k, v in details.items())
        return f"{timestamp}: {priority} {description} ({pairs})"
