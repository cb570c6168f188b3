"""Parsers for UFW kernel log lines and ``ufw status`` output."""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

LOG_LINE_RE = re.compile(
    r"^(.*?)\s+\S+\s+kernel:\s+\[\s*(.*?)\]\s+\[?UFW\s+(\w+)\]?:?\s+(.*?)$"
)
INTERFACE_IN_RE = re.compile(r"(?:^|\s)IN=(\S+)")
INTERFACE_OUT_RE = re.compile(r"(?:^|\s)OUT=(\S+)")
SRC_RE = re.compile(r"(?:^|\s)SRC=(\S+)")
DST_RE = re.compile(r"(?:^|\s)DST=(\S+)")
PROTO_RE = re.compile(r"(?:^|\s)PROTO=(\S+)")
SPT_RE = re.compile(r"(?:^|\s)SPT=(\d+)")
DPT_RE = re.compile(r"(?:^|\s)DPT=(\d+)")

DEFAULT_POLICY_RE = re.compile(r"(\w+)\s+\((\w+)\)")
NUMBERED_RULE_RE = re.compile(r"^\[\s*(\d+)\]\s+(\S+(?: \(v6\))?)\s+(\w+)\s+(\w+)\s+(.*)$")
PLAIN_RULE_RE = re.compile(r"^(\S+(?: \(v6\))?)\s+(ALLOW|DENY|REJECT|LIMIT)(?:\s+(IN|OUT|FWD))?\s+(.*)$", re.IGNORECASE)


def _search(pattern: "re.Pattern[str]", text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


def _port(value: Optional[str]) -> Optional[int]:
    return int(value) if value is not None else None


def _syslog_time(value: str) -> str:
    """Classic syslog stamps carry no year; assume the current one."""
    try:
        parsed = datetime.strptime(f"{datetime.now().year} {' '.join(value.split())}", "%Y %b %d %H:%M:%S")
    except ValueError:
        return value
    return parsed.isoformat()


class UfwOutputParser:
    """Independent key extraction from UFW logs and status tables."""

    @staticmethod
    def parse_log_events(text: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Parse ``[UFW BLOCK]``/``[UFW ALLOW]`` kernel log lines, newest first."""
        events: List[Dict[str, Any]] = []
        for line in reversed(text.splitlines()):
            match = LOG_LINE_RE.match(line.strip())
            if not match:
                continue

            log_time, kernel_time, action, blob = match.groups()
            action = action.lower()

            in_iface = _search(INTERFACE_IN_RE, blob)
            out_iface = _search(INTERFACE_OUT_RE, blob)
            if in_iface:
                direction, interface = "incoming", in_iface
            elif out_iface:
                direction, interface = "outgoing", out_iface
            else:
                direction, interface = "unknown", None

            source = _search(SRC_RE, blob) or "unknown"
            destination = _search(DST_RE, blob) or "unknown"
            protocol = _search(PROTO_RE, blob)
            protocol = protocol.lower() if protocol else None
            src_port = _port(_search(SPT_RE, blob))
            dst_port = _port(_search(DPT_RE, blob))

            verb = "blocked" if action == "block" else "allowed" if action == "allow" else action
            if direction == "outgoing":
                description = f"Firewall {verb} {direction} connection to {destination} from {source}"
            else:
                description = f"Firewall {verb} {direction} connection from {source} to {destination}"
            if dst_port is not None:
                description += f" on port {dst_port}"
            if protocol:
                description += f" ({protocol})"

            events.append({
                "timestamp": _syslog_time(log_time),
                "log_time": log_time,
                "kernel_time": kernel_time.strip(),
                "action": action,
                "direction": direction,
                "interface": interface,
                "source": source,
                "destination": destination,
                "protocol": protocol,
                "source_port": src_port,
                "destination_port": dst_port,
                "description": description,
                "raw_log": line.strip(),
            })
            if len(events) >= limit:
                break
        return events

    @staticmethod
    def parse_status_output(text: str) -> Dict[str, Any]:
        """Parse ``ufw status [numbered|verbose]``.

        Returns ``{'active': bool, 'default_policies': {...}, 'rules': [...]}``.
        Rules are only read after the dashed separator line.
        """
        status: Dict[str, Any] = {
            "active": False,
            "default_policies": {
                "incoming": "deny",
                "outgoing": "allow",
                "routed": "reject",
            },
            "rules": [],
        }
        in_rules = False

        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue

            if line.startswith("Status:"):
                status["active"] = line.split(":", 1)[1].strip().lower() == "active"
                continue

            if line.startswith("Default:"):
                for policy, direction in DEFAULT_POLICY_RE.findall(line.split(":", 1)[1]):
                    status["default_policies"][direction.lower()] = policy.lower()
                continue

            if set(line) <= {"-", " "}:
                in_rules = True
                continue

            if not in_rules:
                continue

            numbered = NUMBERED_RULE_RE.match(line)
            if numbered:
                number, port, action, direction, source = numbered.groups()
                status["rules"].append({
                    "number": int(number),
                    "port": port,
                    "action": action.lower(),
                    "direction": direction.lower(),
                    "source": source.strip(),
                })
                continue

            plain = PLAIN_RULE_RE.match(line)
            if plain:
                port, action, direction, source = plain.groups()
                status["rules"].append({
                    "number": None,
                    "port": port,
                    "action": action.lower(),
                    "direction": (direction or "in").lower(),
                    "source": source.strip(),
                })

        return status
