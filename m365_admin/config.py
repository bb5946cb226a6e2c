"""
Configuration module for the M365 Admin Toolkit.
Defines tunable parameters, Graph API endpoints, and operational settings.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str = "./base64.txt"   # base64-encoded PFX
    certificate_password: str = ""            # prompted for when empty
    thumbprint: str = ""

@dataclass
class ClientSecretAuth:
    """Client-secret app-only authentication configuration."""
    tenant_id: str
    client_id: str
    client_secret: str = ""        # Falls back to M365_CLIENT_SECRET

@dataclass
class DelegatedAuth:
    """Delegated (interactive) authentication configuration."""
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: [
        "https://graph.microsoft.com/.default"
    ])

AUTH_MODES = ("certificate", "secret", "delegated")

@dataclass
class AuthConfig:
    """Authentication configuration — certificate, client secret or delegated."""
    mode: str = "certificate"
    certificate: Optional[CertificateAuth] = None
    secret: Optional[ClientSecretAuth] = None
    delegated: Optional[DelegatedAuth] = None


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"

# Rate limiting / throttling
MAX_CONCURRENT_REQUESTS = 4       # Parallel requests to Graph
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops

# Graph $batch accepts at most 20 sub-requests
GRAPH_BATCH_LIMIT = 20


# ─── Batch Processing ────────────────────────────────────────────────────────

DEFAULT_CHUNK_SIZE = 20
DEFAULT_MAX_CONCURRENCY = 5
DEFAULT_CHUNK_DELAY_MS = 500

@dataclass
class BatchConfig:
    """Chunking and concurrency settings for bulk work."""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    delay_ms: int = DEFAULT_CHUNK_DELAY_MS

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {self.delay_ms}")


# ─── Output Configuration ───────────────────────────────────────────────────

OUTPUT_FORMATS = ("csv", "json", "html")

@dataclass
class OutputConfig:
    """Output directory and format settings."""
    base_dir: str = ""
    timestamp: str = ""
    formats: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "m365_admin_output")

    @property
    def output_dir(self) -> Path:
        return Path(self.base_dir)


def _section(section_cls, values: dict):
    """Build a settings dataclass from a dict, dropping unknown keys."""
    known = {f.name for f in fields(section_cls)}
    return section_cls(**{k: v for k, v in values.items() if k in known})


_AUTH_SECTIONS = {
    "certificate": CertificateAuth,
    "secret": ClientSecretAuth,
    "delegated": DelegatedAuth,
}


# ─── Master Configuration ───────────────────────────────────────────────────

USAGE_PERIODS = ("D7", "D30", "D90", "D180")

@dataclass
class ToolkitConfig:
    """Top-level configuration for the toolkit."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    dry_run: bool = False
    verbose: bool = False
    default_domain: str = ""          # Used to derive UPNs for new users
    usage_period: str = "D30"         # Period for usage report endpoints
    inactive_days: int = 90           # Days without sign-in = inactive

    @classmethod
    def from_file(cls, path: str | Path) -> "ToolkitConfig":
        """
        Read a JSON config file. Sections and keys that are not recognised
        are ignored; auth sections are only built for modes present.
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        config = cls()

        auth = data.get("auth", {})
        config.auth.mode = auth.get("mode", config.auth.mode)
        for mode, section_cls in _AUTH_SECTIONS.items():
            if mode in auth:
                setattr(config.auth, mode, _section(section_cls, auth[mode]))

        if "batch" in data:
            config.batch = _section(BatchConfig, data["batch"])
        if "output" in data:
            config.output = _section(OutputConfig, data["output"])

        for key in ("dry_run", "verbose", "default_domain", "usage_period"):
            if key in data:
                setattr(config, key, data[key])
        config.inactive_days = int(data.get("inactive_days", config.inactive_days))
        return config

    def apply_environment(self) -> None:
        """Fill credentials from M365_* environment variables where unset."""
        tenant_id = os.environ.get("M365_TENANT_ID", "")
        client_id = os.environ.get("M365_CLIENT_ID", "")
        secret = os.environ.get("M365_CLIENT_SECRET", "")

        if self.auth.mode == "secret":
            if not self.auth.secret and tenant_id and client_id:
                self.auth.secret = ClientSecretAuth(tenant_id=tenant_id, client_id=client_id)
            if self.auth.secret and not self.auth.secret.client_secret:
                self.auth.secret.client_secret = secret
        elif self.auth.mode == "delegated":
            if not self.auth.delegated and tenant_id and client_id:
                self.auth.delegated = DelegatedAuth(tenant_id=tenant_id, client_id=client_id)
        elif self.auth.mode == "certificate":
            if self.auth.certificate and not self.auth.certificate.certificate_password:
                self.auth.certificate.certificate_password = os.environ.get(
                    "M365_CERT_PASSWORD", ""
                )


# ─── Graph API Permissions (least privilege per command family) ─────────

REQUIRED_PERMISSIONS = {
    "User.ReadWrite.All": "Create, update, block and delete users",
    "Group.ReadWrite.All": "Create and manage groups, Teams and memberships",
    "Directory.ReadWrite.All": "Assign licenses and managers",
    "UserAuthenticationMethod.Read.All": "MFA registration report",
    "AuditLog.Read.All": "Sign-in activity and directory audit logs",
    "Reports.Read.All": "Usage reports (Office 365, Teams, SharePoint, OneDrive)",
    "SecurityEvents.Read.All": "Secure score and security alerts",
    "SecurityAlert.Read.All": "Security alerts (alerts_v2)",
    "Sites.Read.All": "SharePoint sites, lists and storage",
    "Files.Read.All": "OneDrive quota and item listing",
    "TeamSettings.ReadWrite.All": "Archive teams and manage settings",
    "Channel.Create": "Create Teams channels",
    "eDiscovery.ReadWrite.All": "eDiscovery case management",
    "RecordsManagement.Read.All": "Retention labels",
    "Mail.Send": "Approval and welcome emails",
}
