# security.py
from __future__ import annotations

import json
import logging
import re
import secrets
import threading
import time
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)


# ============================================================
# Rate limiter / block list
# ============================================================

RATE_LIMIT_WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """
    Per-client sliding-window counter plus a permanent block list.

    Contract:
    - A blocked client is rejected before its window is looked at.
    - At most `max_requests` admitted requests inside any trailing window.
    - A rejected request is never recorded, so it does not count later.
    - Blocking is one-way for the lifetime of the process.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        block_on_limit: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.block_on_limit = block_on_limit
        self._clock = clock
        self._requests: dict[str, list[float]] = {}
        self._blocked: set[str] = set()
        self._lock = threading.Lock()

    def admit(self, client_id: str) -> bool:
        with self._lock:
            if client_id in self._blocked:
                return False

            now = self._clock()
            cutoff = now - self.window_seconds
            recent = [t for t in self._requests.get(client_id, ()) if t > cutoff]

            if len(recent) >= self.max_requests:
                if self.block_on_limit:
                    self._blocked.add(client_id)
                    logger.warning(f"Client blocked after exceeding rate limit: {client_id}")
                self._requests[client_id] = recent
                return False

            recent.append(now)
            self._requests[client_id] = recent
            return True

    def block(self, client_id: str) -> None:
        with self._lock:
            self._blocked.add(client_id)

    def is_blocked(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._blocked

    @property
    def blocked_count(self) -> int:
        with self._lock:
            return len(self._blocked)

    def request_count(self, client_id: str) -> int:
        """Requests currently counted inside the window for client_id."""
        with self._lock:
            cutoff = self._clock() - self.window_seconds
            return sum(1 for t in self._requests.get(client_id, ()) if t > cutoff)


# ============================================================
# CSRF
# ============================================================

CSRF_FIELD = "csrf_token"
CSRF_TOKEN_BYTES = 32
CSRF_TOKEN_LENGTH = CSRF_TOKEN_BYTES * 2


def generate_csrf_token() -> str:
    return secrets.token_hex(CSRF_TOKEN_BYTES)


def validate_csrf_token(token: Optional[str]) -> bool:
    # Tokens are not bound to a session: presence + exact length only.
    return isinstance(token, str) and len(token) == CSRF_TOKEN_LENGTH


# ============================================================
# Sanitization
# ============================================================

MAX_FIELD_LENGTH = 1000


def sanitize_input(value: Any) -> Any:
    """
    Strip '<' / '>' and cap length. Lists (repeated keys) are cleaned
    item by item; other non-strings are returned untouched.
    """
    if isinstance(value, list):
        return [sanitize_input(v) for v in value]
    if not isinstance(value, str):
        return value
    return value.replace("<", "").replace(">", "")[:MAX_FIELD_LENGTH]


def sanitize_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: sanitize_input(v) for k, v in fields.items()}


# ============================================================
# Suspicious request detection
# ============================================================

# Order matters only for which name gets reported; any hit flags the request.
SUSPICIOUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    # automation / tooling
    ("crawler", re.compile(r"(?:bot|crawler|spider|scraper)\b", re.IGNORECASE)),
    ("http-tool", re.compile(r"\b(?:curl|wget|python-requests|go-http-client|libwww-perl)\b", re.IGNORECASE)),
    ("headless", re.compile(r"headless|phantomjs|selenium|puppeteer|playwright", re.IGNORECASE)),
    # attack tools
    ("scanner", re.compile(r"sqlmap|nikto|nmap|masscan|dirbuster|gobuster|acunetix|nessus|netsparker", re.IGNORECASE)),
    # inline script injection
    # field values arrive here already stripped of "<", so script-tag only matches the user agent
    ("script-tag", re.compile(r"<\s*script", re.IGNORECASE)),
    ("script-uri", re.compile(r"javascript\s*:", re.IGNORECASE)),
    ("event-handler", re.compile(r"\bon(?:error|load|click|mouseover|focus)\s*=", re.IGNORECASE)),
    ("script-call", re.compile(r"document\.cookie|\beval\s*\(", re.IGNORECASE)),
)


def _match(text: str) -> Optional[str]:
    for name, pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(text):
            return name
    return None


def find_suspicious_pattern(user_agent: Optional[str], fields: Mapping[str, Any]) -> Optional[str]:
    """
    Return the name of the first matching pattern, or None.

    A hit on the user agent OR on any single field value is enough. List values
    (repeated keys) are checked item by item; non-string values are skipped.
    """
    if user_agent:
        hit = _match(user_agent)
        if hit:
            return hit
    for value in fields.values():
        for item in (value if isinstance(value, list) else [value]):
            if not isinstance(item, str):
                continue
            hit = _match(item)
            if hit:
                return hit
    return None


# ============================================================
# Client metadata / display helpers
# ============================================================

AUTOFILL_METADATA_KEY = "autofillDetected"


def parse_research_metadata(raw: Any) -> dict[str, Any]:
    """Best-effort JSON object decode. Anything unusable becomes {}."""
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError):
        logger.debug("research_metadata is not valid JSON; ignoring")
        return {}
    return data if isinstance(data, dict) else {}


_CARD_RE = re.compile(r"^[\d\s-]{13,23}$")
_SENSITIVE_FIELDS = {"cc-number", "cc_number", "card", "card-number", "cardnumber"}


def looks_like_payment_number(value: str) -> bool:
    if not _CARD_RE.match(value):
        return False
    digits = re.sub(r"\D", "", value)
    return 13 <= len(digits) <= 19


def mask_sensitive(name: str, value: Any) -> str:
    """Display form of a stored value: payment-like numbers keep only the last 4 digits."""
    if isinstance(value, list):
        return ", ".join(mask_sensitive(name, v) for v in value)
    text = "" if value is None else str(value)
    if not text:
        return text
    if name.lower() in _SENSITIVE_FIELDS or looks_like_payment_number(text):
        digits = re.sub(r"\D", "", text) or text
        return "****" + digits[-4:]
    return text
