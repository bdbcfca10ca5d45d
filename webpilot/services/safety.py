"""
Safety validation for model-produced JavaScript

A pattern blocklist, not a sandbox: anything that matches is refused before it
reaches a page.
"""

import re
from typing import List, Pattern

from webpilot.models import SafetyReport
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

DANGEROUS_PATTERNS: List[Pattern] = [
    # Code execution
    re.compile(r"\beval\s*\(", re.I),
    re.compile(r"\bnew\s+Function\s*\(", re.I),
    re.compile(r"setTimeout\s*\(\s*['\"`]", re.I),
    re.compile(r"setInterval\s*\(\s*['\"`]", re.I),
    # Data access
    re.compile(r"document\.cookie", re.I),
    re.compile(r"localStorage\.getItem\s*\(['\"]apiKey['\"]\)", re.I),
    re.compile(r"chrome\.storage", re.I),
    re.compile(r"sessionStorage", re.I),
    re.compile(r"indexedDB", re.I),
    # Network exfiltration
    re.compile(r"\bfetch\s*\(['\"](?!https?://)", re.I),
    re.compile(r"XMLHttpRequest", re.I),
    re.compile(r"navigator\.sendBeacon", re.I),
    re.compile(r"WebSocket", re.I),
    # DOM injection
    re.compile(r"<script[^>]*src\s*=", re.I),
    re.compile(r"document\.write", re.I),
    re.compile(r"insertAdjacentHTML", re.I),
    # Window operations (phishing)
    re.compile(r"window\.open\s*\(", re.I),
    re.compile(r"window\.location\s*=", re.I),
]


class PatternSafetyValidator:
    def __init__(self, patterns: List[Pattern] = None):
        self.patterns = patterns if patterns is not None else DANGEROUS_PATTERNS

    def validate(self, code: str) -> SafetyReport:
        warnings = [
            f"Potentially dangerous pattern detected: /{p.pattern}/"
            for p in self.patterns
            if p.search(code or "")
        ]
        if warnings:
            logger.warning(f"[SAFETY] {len(warnings)} dangerous pattern(s) in generated code")
        return SafetyReport(safe=not warnings, warnings=warnings)
