"""Parsers for Trivy vulnerability reports."""

import json
import logging
import re
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

PACKAGE_CONTEXT_RE = re.compile(r"^(.+) \((.+)\)$")
TABLE_ROW_RE = re.compile(r"^\|\s+(\S+)\s+\|\s+(\S+)\s+\|\s+(.+?)\s+\|")
FIXED_VERSION_RE = re.compile(r"Fixed version:\s+(.+)")


class TrivyOutputParser:
    """Extracts vulnerability records from Trivy JSON or table output."""

    @staticmethod
    def parse_vulnerabilities(payload: str) -> List[Dict[str, Any]]:
        """Walk ``Results[].Vulnerabilities[]`` into flat records.

        Missing fields get placeholder values instead of dropping the record.
        Invalid JSON yields an empty list.
        """
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, TypeError) as e:
            logger.debug(f"Trivy output is not valid JSON: {e}")
            return []

        if not isinstance(data, dict):
            return []

        records: List[Dict[str, Any]] = []
        for result in data.get("Results") or []:
            if not isinstance(result, dict):
                continue
            target = result.get("Target", "")
            for vuln in result.get("Vulnerabilities") or []:
                if not isinstance(vuln, dict):
                    continue
                records.append({
                    "package_name": vuln.get("PkgName") or "unknown",
                    "version": vuln.get("InstalledVersion") or "unknown",
                    "severity": vuln.get("Severity") or "UNKNOWN",
                    "title": vuln.get("Title") or vuln.get("VulnerabilityID") or "Unknown vulnerability",
                    "description": vuln.get("Description") or "No description available",
                    "cve": vuln.get("VulnerabilityID") or "Unknown",
                    "fixed_version": vuln.get("FixedVersion") or "None",
                    "target": target,
                })
        return records

    @staticmethod
    def parse_text_output(text: str) -> List[Dict[str, Any]]:
        """Parse the table layout, attaching rows to the last ``pkg (version)`` line."""
        records: List[Dict[str, Any]] = []
        package = "unknown"
        version = "unknown"
        lines = text.splitlines()

        for i, raw in enumerate(lines):
            line = raw.strip()
            if not line:
                continue

            row = TABLE_ROW_RE.match(line)
            if row:
                cve, severity, title = row.groups()
                if cve.upper() in ("LIBRARY", "VULNERABILITY", "CVE"):
                    continue
                fixed_version = "None"
                if i + 1 < len(lines):
                    fixed = FIXED_VERSION_RE.search(lines[i + 1])
                    if fixed:
                        fixed_version = fixed.group(1).strip()
                records.append({
                    "package_name": package,
                    "version": version,
                    "severity": severity.upper(),
                    "title": title,
                    "description": f"Vulnerability in {package} {version}",
                    "cve": cve,
                    "fixed_version": fixed_version,
                    "target": "",
                })
                continue

            context = PACKAGE_CONTEXT_RE.match(line)
            if context and not line.startswith(("|", "+", "=", "Total:")):
                package = context.group(1).strip()
                version = context.group(2).strip()

        return records
