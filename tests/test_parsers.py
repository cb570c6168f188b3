"""Tests for the tool output parsers."""

import json
import pytest

from perimeter.parsers import (
    ClamAVOutputParser,
    Fail2banOutputParser,
    FalcoOutputParser,
    TrivyOutputParser,
    UfwOutputParser,
)


class TestClamAVOutputParser:
    def test_infected_files(self, fixtures_dir):
        text = (fixtures_dir / "clamscan_output.log").read_text()
        detections = ClamAVOutputParser.parse_infected_files(text)

        assert len(detections) == 3
        assert detections[0] == {"file": "/srv/www/uploads/eicar.com", "threat": "Eicar-Test-Signature"}
        assert detections[1]["threat"] == "Php.Webshell.Generic-6951452-0"
        assert detections[2]["file"] == "/home/deploy/tmp/toolbar.exe"

    def test_scan_summary(self, fixtures_dir):
        text = (fixtures_dir / "clamscan_output.log").read_text()
        summary = ClamAVOutputParser.parse_scan_summary(text)

        assert summary["infected_files"] == "3"
        assert summary["known_viruses"] == "8707525"
        assert summary["scanned_files"] == "846"
        assert summary["data_read"] == "31.02 MB (ratio 1.85:1)"

    def test_summary_without_marker(self):
        assert ClamAVOutputParser.parse_scan_summary("Infected files: 3\n") == {}

    def test_clean_output(self):
        text = "/srv/www/index.php: OK\n/srv/www/app.js: OK\n"
        assert ClamAVOutputParser.parse_infected_files(text) == []

    def test_version(self):
        assert ClamAVOutputParser.parse_version("ClamAV 1.0.7/27306/Mon Jun 16 08:27:10 2025") == "1.0.7"
        assert ClamAVOutputParser.parse_version("clamscan: command not found") is None

    def test_log_events_newest_first(self, fixtures_dir):
        text = (fixtures_dir / "clamonacc.log").read_text()
        events = ClamAVOutputParser.parse_log_events(text)

        assert [e["file"] for e in events] == ["/srv/www/uploads/shell.php", "/srv/www/uploads/eicar.com"]
        assert events[0]["timestamp"] == "2025-06-16T12:05:12"
        assert events[0]["raw_log"].endswith("FOUND")

    def test_log_events_limit(self, fixtures_dir):
        text = (fixtures_dir / "clamonacc.log").read_text()
        events = ClamAVOutputParser.parse_log_events(text, limit=1)
        assert len(events) == 1
        assert events[0]["threat"] == "Php.Webshell.Generic-6951452-0"


class TestFail2banOutputParser:
    @pytest.mark.parametrize("marker", ["Server replied: pong", "`- Jail list:\tsshd", "|- Number of jail:\t1"])
    def test_running_markers(self, marker):
        assert Fail2banOutputParser.parse_status(marker)["running"] is True

    def test_empty_status_not_running(self):
        status = Fail2banOutputParser.parse_status("")
        assert status == {"running": False, "version": None, "jails": []}

    def test_status_fixture(self, fixtures_dir):
        text = (fixtures_dir / "fail2ban_status.txt").read_text()
        status = Fail2banOutputParser.parse_status(text)
        assert status["running"] is True
        assert status["jails"] == ["sshd", "apache-auth"]

    def test_version(self):
        status = Fail2banOutputParser.parse_status("Fail2Ban v1.0.2\nServer replied: pong")
        assert status["version"] == "1.0.2"

    def test_jail_status(self, fixtures_dir):
        text = (fixtures_dir / "fail2ban_jail_sshd.txt").read_text()
        status = Fail2banOutputParser.parse_jail_status(text)

        assert status["jail"] == "sshd"
        assert status["currently_failed"] == 2
        assert status["total_failed"] == 57
        assert status["currently_banned"] == 2
        assert status["total_banned"] == 11
        assert status["banned_ips"] == ["192.168.1.10", "203.0.113.7"]
        assert status["file_list"] == ["/var/log/auth.log"]

    @pytest.mark.parametrize("text", [
        "Status for the jail: sshd\n`- Actions\n   `- Currently banned:\t0\n",
        "Status for the jail: sshd\n   `- Banned IP list:\t\n",
        "Status for the jail: sshd\n   `- Banned IP list:\tNo banned IP list\n",
    ])
    def test_no_banned_ips(self, text):
        assert Fail2banOutputParser.parse_jail_status(text)["banned_ips"] == []

    def test_log_event_with_limit(self):
        line = "2025-06-16 12:00:01,123 fail2ban.actions [123]: INFO [sshd] Ban 192.168.1.10"
        events = Fail2banOutputParser.parse_log_events(line, limit=1)

        assert len(events) == 1
        assert events[0]["jail"] == "sshd"
        assert events[0]["action"] == "ban"
        assert events[0]["ip"] == "192.168.1.10"
        assert events[0]["component"] == "actions"
        assert events[0]["pid"] == 123
        assert events[0]["level"] == "info"
        assert events[0]["timestamp"] == "2025-06-16T12:00:01.123000"

    def test_log_fixture_newest_first(self, fixtures_dir):
        text = (fixtures_dir / "fail2ban.log").read_text()
        events = Fail2banOutputParser.parse_log_events(text)

        assert [e["action"] for e in events] == ["ban", None, "found"]
        assert events[1]["level"] == "warning"
        assert events[1]["jail"] is None
        assert events[2]["ip"] == "192.168.1.10"


class TestFalcoOutputParser:
    def test_text_events(self, fixtures_dir):
        text = (fixtures_dir / "falco_alerts.txt").read_text()
        events = FalcoOutputParser.parse_text_events(text)

        assert len(events) == 3
        first = events[0]
        assert first["priority"] == "warning"
        assert first["rule"] == "Shell spawned in a container"
        assert first["user"] == "root"
        assert first["process"] == "bash"
        assert first["details"]["container_id"] == "3f2a1b"
        assert first["timestamp"].endswith("T12:00:01Z")
        assert events[1]["process"] == "curl"
        assert events[2]["priority"] == "critical"

    def test_text_description_with_parentheses(self):
        line = "12:00:01.123456789: Warning Shell spawned (interactive) in container (user=root command=bash -i)"
        event = FalcoOutputParser.parse_text_events(line)[0]

        assert event["description"] == "Shell spawned (interactive) in container"
        assert event["details"] == {"user": "root", "command": "bash"}
        assert event["user"] == "root"
        assert event["process"] == "bash"

    def test_json_lines(self, fixtures_dir):
        payload = (fixtures_dir / "falco_alerts.jsonl").read_text()
        events = FalcoOutputParser.parse(payload)

        assert len(events) == 3
        assert events[0]["rule"] == "Terminal shell in container"
        assert events[2]["output_fields"]["proc.name"] == "cat"

    def test_json_document_with_events(self):
        payload = json.dumps({"events": [{"rule": "a"}, {"rule": "b"}]})
        assert FalcoOutputParser.parse_json_events(payload) == [{"rule": "a"}, {"rule": "b"}]

    def test_json_array(self):
        payload = json.dumps([{"rule": "a"}, "junk", {"rule": "b"}])
        assert FalcoOutputParser.parse_json_events(payload) == [{"rule": "a"}, {"rule": "b"}]

    def test_bad_json_lines_skipped(self):
        payload = '{"rule": "a"}\n{broken\n{"rule": "b"}\n'
        assert [e["rule"] for e in FalcoOutputParser.parse_json_events(payload)] == ["a", "b"]

    def test_format_text_event(self):
        event = {
            "timestamp": "12:00:01.000000000",
            "priority": "warning",
            "description": "Shell spawned",
            "details": {"user": "root"},
        }
        assert FalcoOutputParser.format_event(event) == "12:00:01.000000000: Warning Shell spawned (user=root)"

    def test_format_json_event(self):
        assert json.loads(FalcoOutputParser.format_event({"rule": "x"}, fmt="json")) == {"rule": "x"}


class TestTrivyOutputParser:
    def test_vulnerabilities(self, fixtures_dir):
        records = TrivyOutputParser.parse_vulnerabilities((fixtures_dir / "trivy_report.json").read_text())

        assert len(records) == 3
        first = records[0]
        assert first["package_name"] == "symfony/http-kernel"
        assert first["version"] == "5.4.8"
        assert first["severity"] == "CRITICAL"
        assert first["cve"] == "CVE-2023-25575"
        assert first["fixed_version"] == "5.4.21"
        assert first["target"] == "composer.lock"
        assert first["description"] == "No description available"
        assert records[2]["fixed_version"] == "None"

    @pytest.mark.parametrize("payload", ["", "not json", "[]", '{"Results": null}'])
    def test_invalid_payloads(self, payload):
        assert TrivyOutputParser.parse_vulnerabilities(payload) == []

    def test_placeholder_defaults(self):
        payload = json.dumps({"Results": [{"Target": "x", "Vulnerabilities": [{}]}]})
        record = TrivyOutputParser.parse_vulnerabilities(payload)[0]
        assert record["package_name"] == "unknown"
        assert record["severity"] == "UNKNOWN"
        assert record["cve"] == "Unknown"

    def test_text_output(self, fixtures_dir):
        records = TrivyOutputParser.parse_text_output((fixtures_dir / "trivy_table.txt").read_text())

        assert [r["cve"] for r in records] == ["CVE-2023-25575", "CVE-2022-24895"]
        assert records[0]["package_name"] == "symfony/http-kernel"
        assert records[0]["version"] == "5.4.8"
        assert records[0]["title"] == "Response caching exposes private data"
        assert records[0]["fixed_version"] == "5.4.21"
        assert records[1]["severity"] == "HIGH"
        assert records[1]["fixed_version"] == "None"


class TestUfwOutputParser:
    def test_log_events(self, fixtures_dir):
        events = UfwOutputParser.parse_log_events((fixtures_dir / "ufw.log").read_text())

        assert len(events) == 2
        blocked = events[1]
        assert blocked["action"] == "block"
        assert blocked["direction"] == "incoming"
        assert blocked["interface"] == "eth0"
        assert blocked["source"] == "203.0.113.7"
        assert blocked["destination"] == "10.0.0.5"
        assert blocked["protocol"] == "tcp"
        assert blocked["source_port"] == 54321
        assert blocked["destination_port"] == 22
        assert blocked["log_time"] == "Jun 16 12:00:01"
        assert blocked["kernel_time"] == "12345.678901"
        assert blocked["description"] == (
            "Firewall blocked incoming connection from 203.0.113.7 to 10.0.0.5 on port 22 (tcp)"
        )

    def test_outgoing_allow(self, fixtures_dir):
        allowed = UfwOutputParser.parse_log_events((fixtures_dir / "ufw.log").read_text(), limit=1)[0]
        assert allowed["action"] == "allow"
        assert allowed["direction"] == "outgoing"
        assert allowed["interface"] == "eth0"
        assert allowed["description"] == (
            "Firewall allowed outgoing connection to 198.51.100.20 from 10.0.0.5 on port 53 (udp)"
        )

    def test_missing_addresses_default_to_unknown(self):
        line = "Jun 16 12:00:01 web01 kernel: [1.0] [UFW BLOCK] IN=eth0 OUT= PROTO=ICMP"
        event = UfwOutputParser.parse_log_events(line)[0]
        assert event["source"] == "unknown"
        assert event["destination"] == "unknown"
        assert event["destination_port"] is None

    def test_status_verbose(self, fixtures_dir):
        status = UfwOutputParser.parse_status_output((fixtures_dir / "ufw_status_verbose.txt").read_text())

        assert status["active"] is True
        assert status["default_policies"] == {
            "incoming": "deny",
            "outgoing": "allow",
            "routed": "disabled",
        }
        assert len(status["rules"]) == 4
        assert status["rules"][0] == {
            "number": None,
            "port": "22/tcp",
            "action": "allow",
            "direction": "in",
            "source": "Anywhere",
        }
        assert status["rules"][2]["action"] == "deny"
        assert status["rules"][3]["port"] == "22/tcp (v6)"

    def test_status_numbered(self, fixtures_dir):
        status = UfwOutputParser.parse_status_output((fixtures_dir / "ufw_status_numbered.txt").read_text())

        assert [r["number"] for r in status["rules"]] == [1, 2, 3]
        assert status["rules"][1]["source"] == "10.0.0.0/8"
        assert status["rules"][2]["source"] == "Anywhere (v6)"

    def test_inactive(self):
        status = UfwOutputParser.parse_status_output("Status: inactive\n")
        assert status["active"] is False
        assert status["rules"] == []
        assert status["default_policies"]["incoming"] == "deny"
