"""Unit tests for securitybot.services.finding_filter: thresholds, severity gates, dedup, ordering."""

import unittest

from securitybot.schemas.findings import FindingStatus
from securitybot.services.finding_filter import FindingFilter

from support import make_config, make_raw


class TestThresholds(unittest.TestCase):
    def setUp(self) -> None:
        self.config = make_config()
        self.filter = FindingFilter(self.config)

    def test_effective_threshold_is_strictest(self) -> None:
        checks = self.config.security_checks
        # check 0.8, critical 0.9, global 0.7
        self.assertEqual(self.filter.effective_threshold(checks["sql_injection"]), 0.9)
        # check 0.8, high 0.8
        self.assertEqual(self.filter.effective_threshold(checks["xss"]), 0.8)
        # check 0.9, high 0.8
        self.assertEqual(self.filter.effective_threshold(checks["hardcoded_secrets"]), 0.9)

    def test_below_severity_threshold_dropped(self) -> None:
        self.assertEqual(self.filter.apply([make_raw(confidence=0.85)]), [])

    def test_above_threshold_kept_as_active(self) -> None:
        findings = self.filter.apply([make_raw(confidence=0.95)])
        self.assertEqual(len(findings), 1)
        finding = findings[0]
        self.assertEqual(finding.title, "SQL Injection")
        self.assertEqual(finding.severity, "critical")
        self.assertEqual(finding.owasp, "A03:2021")
        self.assertEqual(finding.cwe, "CWE-89")
        self.assertEqual(finding.location, "db.py:42")
        self.assertEqual(finding.status, FindingStatus.ACTIVE)
        self.assertIsNone(finding.suppression)

    def test_threshold_is_inclusive(self) -> None:
        self.assertEqual(len(self.filter.apply([make_raw(check_id="xss", confidence=0.8)])), 1)

    def test_global_threshold_applies(self) -> None:
        config = make_config(lambda d: d.update(confidence_threshold=0.99))
        self.assertEqual(FindingFilter(config).apply([make_raw(confidence=0.95)]), [])

    def test_disabled_check_dropped(self) -> None:
        config = make_config(lambda d: d["security_checks"]["sql_injection"].update(enabled=False))
        self.assertEqual(FindingFilter(config).apply([make_raw(confidence=1.0)]), [])

    def test_disabled_severity_dropped(self) -> None:
        config = make_config(lambda d: d["security_checks"]["xss"].update(severity="low"))
        self.assertEqual(FindingFilter(config).apply([make_raw(check_id="xss", confidence=1.0)]), [])

    def test_unknown_check_dropped(self) -> None:
        self.assertEqual(self.filter.apply([make_raw(check_id="buffer_overflow", confidence=1.0)]), [])


class TestDedupAndOrder(unittest.TestCase):
    def setUp(self) -> None:
        self.filter = FindingFilter(make_config())

    def test_highest_confidence_wins(self) -> None:
        findings = self.filter.apply(
            [
                make_raw(confidence=0.92, chunk_index=0, description="first window"),
                make_raw(confidence=0.97, chunk_index=1, description="overlap window"),
            ]
        )
        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].confidence, 0.97)
        self.assertEqual(findings[0].description, "overlap window")

    def test_tie_keeps_earliest_submission(self) -> None:
        findings = self.filter.apply(
            [
                make_raw(chunk_index=1, ordinal=0, description="later chunk"),
                make_raw(chunk_index=0, ordinal=3, description="earlier chunk"),
            ]
        )
        self.assertEqual([f.description for f in findings], ["earlier chunk"])

    def test_different_line_content_is_distinct(self) -> None:
        findings = self.filter.apply([make_raw(), make_raw(content="cursor.execute(query)")])
        self.assertEqual(len(findings), 2)

    def test_ordered_by_severity_then_location(self) -> None:
        findings = self.filter.apply(
            [
                make_raw(check_id="xss", file="a.py", line=1, confidence=0.9),
                make_raw(check_id="sql_injection", file="b.py", line=9, confidence=0.95),
                make_raw(check_id="sql_injection", file="b.py", line=3, confidence=0.95),
                make_raw(check_id="command_injection", file="a.py", line=5, confidence=0.95),
            ]
        )
        self.assertEqual(
            [(f.check_id, f.location) for f in findings],
            [
                ("command_injection", "a.py:5"),
                ("sql_injection", "b.py:3"),
                ("sql_injection", "b.py:9"),
                ("xss", "a.py:1"),
            ],
        )

    def test_input_order_does_not_change_output(self) -> None:
        raws = [
            make_raw(check_id="xss", file="a.py", line=1, confidence=0.9),
            make_raw(file="b.py", line=3, confidence=0.95),
            make_raw(file="b.py", line=3, confidence=0.95, chunk_index=2),
        ]
        self.assertEqual(self.filter.apply(raws), self.filter.apply(list(reversed(raws))))
