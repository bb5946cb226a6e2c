"""
Change Guard — Classifies outbound requests as reads or writes and enforces dry-run.
In dry-run mode every write is recorded as a planned change and never sent.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("m365_admin.safety")

# ─── Write HTTP Methods ──────────────────────────────────────────────────────

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Known read-only POST endpoints (Graph uses POST for some queries)
READ_ONLY_POST_ENDPOINTS = [
    re.compile(r"/\$batch$"),                        # Batch of GET sub-requests
    re.compile(r"/microsoft\.graph\.getByIds$"),     # Resolve IDs
    re.compile(r"/getMemberGroups$"),
    re.compile(r"/getMemberObjects$"),
    re.compile(r"/security/microsoft\.graph\.security\.runHuntingQuery$"),
]


class WriteBlocked(Exception):
    """Raised when a write is attempted while writes are disabled."""
    pass


class ChangeGuard:
    """
    Validates every outbound HTTP request.
    Reads always pass. Writes pass when live, are recorded when dry-run.
    Keeps a list of every write seen, planned or applied.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.planned_changes: list[dict] = []
        self.applied_changes: list[dict] = []

    @staticmethod
    def is_write(method: str, url: str) -> bool:
        method_upper = method.upper()
        if method_upper not in WRITE_METHODS:
            return False
        if method_upper == "POST":
            for pattern in READ_ONLY_POST_ENDPOINTS:
                if pattern.search(url.split("?", 1)[0]):
                    return False
        return True

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Return True when the request should be sent.
        Return False when it was captured as a dry-run planned change.
        """
        if not self.is_write(method, url):
            return True

        change = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method.upper(),
            "url": url,
            "body": body,
        }
        if self.dry_run:
            self.planned_changes.append(change)
            logger.info(f"DRY RUN: would send {method.upper()} {url}")
            return False

        self.applied_changes.append(change)
        logger.debug(f"Write request: {method.upper()} {url}")
        return True

    def require_live(self, action: str) -> None:
        """Refuse actions that cannot be simulated in dry-run mode."""
        if self.dry_run:
            raise WriteBlocked(f"'{action}' cannot run in dry-run mode")

    def print_banner(self):
        """Print the dry-run banner when writes are disabled."""
        if not self.dry_run:
            return
        print("=" * 70)
        print("  DRY RUN -- NO CHANGES WILL BE MADE TO THE TENANT")
        print("  * Reads are sent to Graph as usual")
        print("  * Writes are recorded as planned changes")
        print("=" * 70)
