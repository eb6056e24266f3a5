# src/engine/results.py
"""
Turns raw Trivy JSON output into per-severity vulnerability counts.
"""
import enum
import json
from typing import Any, Dict, Optional, Tuple

from engine.exceptions import ParseError


class Severity(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def lookup(cls, label: Any) -> Optional["Severity"]:
        """Case-insensitive match; anything unrecognised maps to None."""
        if not isinstance(label, str):
            return None
        try:
            return cls(label.strip().lower())
        except ValueError:
            return None


VulnerabilityCounts = Dict[str, int]


def empty_counts() -> VulnerabilityCounts:
    return {severity.value: 0 for severity in Severity}


def total_vulnerabilities(counts: Optional[VulnerabilityCounts]) -> int:
    if not counts:
        return 0
    return sum(counts.get(severity.value, 0) for severity in Severity)


def parse_report(raw_output: str) -> Dict[str, Any]:
    try:
        report = json.loads(raw_output)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Scanner output is not valid JSON: {e}") from e
    if not isinstance(report, dict):
        raise ParseError(f"Expected a JSON object, got {type(report).__name__}")
    return report


def count_vulnerabilities(report: Dict[str, Any]) -> VulnerabilityCounts:
    """
    Count findings by severity across every scanned component.
    Findings with an unknown severity are dropped.
    """
    counts = empty_counts()
    for result in report.get("Results") or []:
        if not isinstance(result, dict):
            continue
        for vuln in result.get("Vulnerabilities") or []:
            if not isinstance(vuln, dict):
                continue
            severity = Severity.lookup(vuln.get("Severity"))
            if severity is not None:
                counts[severity.value] += 1
    return counts


def interpret_report(raw_output: str) -> Tuple[VulnerabilityCounts, Dict[str, Any]]:
    report = parse_report(raw_output)
    return count_vulnerabilities(report), report


def interpret(raw_output: str) -> VulnerabilityCounts:
    counts, _ = interpret_report(raw_output)
    return counts
