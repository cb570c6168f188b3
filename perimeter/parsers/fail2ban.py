"""Parsers for fail2ban-client output and the fail2ban log."""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

RUNNING_MARKERS = ("Server replied:", "Jail list:", "Number of jail:")

VERSION_RE = re.compile(r"v(\d+\.\d+\.\d+)")
JAIL_LIST_RE = re.compile(r"Jail list:[ \t]*(.*)$", re.MULTILINE)

JAIL_NAME_RE = re.compile(r"Status for the jail:[ \t]*(.+)$", re.MULTILINE)
CURRENTLY_FAILED_RE = re.compile(r"Currently failed:\s+(\d+)", re.IGNORECASE)
TOTAL_FAILED_RE = re.compile(r"Total failed:\s+(\d+)", re.IGNORECASE)
CURRENTLY_BANNED_RE = re.compile(r"Currently banned:\s+(\d+)", re.IGNORECASE)
TOTAL_BANNED_RE = re.compile(r"Total banned:\s+(\d+)", re.IGNORECASE)
BANNED_IPS_RE = re.compile(r"Banned IP list:[ \t]*(.*)$", re.MULTILINE)
FILE_LIST_RE = re.compile(r"File list:[ \t]*(.*)$", re.MULTILINE)
FILTER_RE = re.compile(r"Filter:[ \t]+(.+)$", re.MULTILINE)
ACTIONS_RE = re.compile(r"Actions:[ \t]+(.+)$", re.MULTILINE)

LOG_LINE_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2},\d+) fail2ban\.(\w+)\s+\[(\d+)\]:\s+"
    r"(INFO|WARNING|ERROR|CRITICAL|DEBUG|NOTICE)\s+(.+)"
)
ACTION_RE = re.compile(r"\[([\w-]+)\]\s+(Ban|Unban|Found)\s+([\d\.:a-fA-F]+)")


def _split_list(value: Optional[str], sep: str = ",") -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(sep) if item.strip()]


class Fail2banOutputParser:
    """Independent regex extractors for fail2ban status dumps and logs."""

    @staticmethod
    def parse_status(text: str) -> Dict[str, Any]:
        """Parse ``fail2ban-client status``.

        Returns ``{'running': bool, 'version': str|None, 'jails': [...]}``.
        The output format varies by version, so any one of several marker
        strings is enough to consider the server running.
        """
        running = any(marker in text for marker in RUNNING_MARKERS)

        version = None
        match = VERSION_RE.search(text)
        if match:
            version = match.group(1)

        return {
            "running": running,
            "version": version,
            "jails": Fail2banOutputParser.parse_jail_list(text),
        }

    @staticmethod
    def parse_jail_list(text: str) -> List[str]:
        match = JAIL_LIST_RE.search(text)
        if not match:
            return []
        return _split_list(match.group(1))

    @staticmethod
    def parse_jail_status(text: str) -> Dict[str, Any]:
        """Parse ``fail2ban-client status <jail>``.

        Every field is optional. A missing ``Banned IP list`` line and an
        empty one both yield ``[]``.
        """
        status: Dict[str, Any] = {
            "jail": None,
            "currently_failed": 0,
            "total_failed": 0,
            "currently_banned": 0,
            "total_banned": 0,
            "banned_ips": [],
            "file_list": [],
            "filter": None,
            "actions": [],
        }

        match = JAIL_NAME_RE.search(text)
        if match:
            status["jail"] = match.group(1).strip()

        for key, pattern in (
            ("currently_failed", CURRENTLY_FAILED_RE),
            ("total_failed", TOTAL_FAILED_RE),
            ("currently_banned", CURRENTLY_BANNED_RE),
            ("total_banned", TOTAL_BANNED_RE),
        ):
            match = pattern.search(text)
            if match:
                status[key] = int(match.group(1))

        match = BANNED_IPS_RE.search(text)
        if match:
            value = match.group(1).strip()
            if value and value != "No banned IP list":
                status["banned_ips"] = value.split()

        match = FILE_LIST_RE.search(text)
        if match:
            status["file_list"] = _split_list(match.group(1))

        match = FILTER_RE.search(text)
        if match:
            status["filter"] = match.group(1).strip()

        match = ACTIONS_RE.search(text)
        if match:
            status["actions"] = _split_list(match.group(1))

        return status

    @staticmethod
    def parse_log_events(text: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Parse fail2ban log lines, newest first, stopping after ``limit`` matches."""
        events: List[Dict[str, Any]] = []
        for line in reversed(text.splitlines()):
            match = LOG_LINE_RE.search(line)
            if not match:
                continue

            timestamp, component, pid, level, message = match.groups()
            event: Dict[str, Any] = {
                "timestamp": Fail2banOutputParser._parse_timestamp(timestamp),
                "component": component,
                "pid": int(pid),
                "level": level.lower(),
                "message": message.strip(),
                "jail": None,
                "action": None,
                "ip": None,
            }

            action = ACTION_RE.search(message)
            if action:
                event["jail"] = action.group(1)
                event["action"] = action.group(2).lower()
                event["ip"] = action.group(3)

            events.append(event)
            if len(events) >= limit:
                break
        return events

    @staticmethod
    def _parse_timestamp(value: str) -> str:
        for fmt in ("%Y-%m-%d %H:%M:%S,%f", "%Y-%m-%d %H:%M:%S"):
            try:
                return datetime.strptime(value, fmt).isoformat()
            except ValueError:
                continue
        logger.debug(f"Unparseable fail2ban timestamp {value!r}, using now")
        return datetime.now().isoformat()
