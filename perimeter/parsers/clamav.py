"""Parsers for clamscan, clamdscan and clamonacc output."""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

VERSION_RE = re.compile(r"ClamAV (\d+\.\d+\.\d+)")
FOUND_RE = re.compile(r"^(.*?):\s+(.*?)\s+FOUND\s*$")
# clamd/clamonacc log prefix: "Mon Jun 16 12:00:01 2025 -> "
LOG_PREFIX_RE = re.compile(r"^(\w{3} \w{3}\s+\d{1,2} \d{2}:\d{2}:\d{2} \d{4}) -> (.*)$")


class ClamAVOutputParser:
    """Line-oriented parsing of ClamAV scanner output."""

    @staticmethod
    def parse_infected_files(text: str) -> List[Dict[str, str]]:
        """Extract ``<path>: <threat> FOUND`` detections.

        Returns a list of ``{'file': path, 'threat': name}`` dicts.
        """
        detections: List[Dict[str, str]] = []
        for line in text.splitlines():
            if "FOUND" not in line:
                continue
            match = FOUND_RE.match(line.strip())
            if not match:
                continue
            detections.append({
                "file": match.group(1).strip(),
                "threat": match.group(2).strip(),
            })
        return detections

    @staticmethod
    def parse_scan_summary(text: str) -> Dict[str, str]:
        """Parse the key/value block that follows the ``SCAN SUMMARY`` marker.

        Keys are lowercased with spaces turned into underscores, so
        ``Infected files: 3`` becomes ``{'infected_files': '3'}``.
        """
        summary: Dict[str, str] = {}
        in_summary = False

        for line in text.splitlines():
            if "SCAN SUMMARY" in line:
                in_summary = True
                continue
            if not in_summary:
                continue

            stripped = line.strip()
            if not stripped:
                if summary:
                    break
                continue

            if ":" in stripped:
                key, value = stripped.split(":", 1)
                key = key.strip().lower().replace(" ", "_")
                summary[key] = value.strip()

        return summary

    @staticmethod
    def parse_version(text: str) -> Optional[str]:
        match = VERSION_RE.search(text)
        return match.group(1) if match else None

    @staticmethod
    def parse_log_events(text: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Extract detections from a clamd or clamonacc log, newest first."""
        events: List[Dict[str, Any]] = []
        for line in reversed(text.splitlines()):
            line = line.strip()
            if "FOUND" not in line:
                continue

            timestamp = None
            prefix = LOG_PREFIX_RE.match(line)
            if prefix:
                timestamp, line = prefix.group(1), prefix.group(2)

            match = FOUND_RE.match(line)
            if not match:
                continue

            event: Dict[str, Any] = {
                "file": match.group(1).strip(),
                "threat": match.group(2).strip(),
                "raw_log": line,
            }
            if timestamp:
                event["timestamp"] = ClamAVOutputParser._parse_log_time(timestamp)
            events.append(event)
            if len(events) >= limit:
                break
        return events

    @staticmethod
    def _parse_log_time(value: str) -> Optional[str]:
        try:
            return datetime.strptime(" ".join(value.split()), "%a %b %d %H:%M:%S %Y").isoformat()
        except ValueError:
            logger.debug(f"Unrecognized clamd log timestamp: {value}")
            return None
