"""
Tenant profiles — saved connection settings for each tenant an admin manages.

Stored in ~/.m365_admin/profiles.json:

    {
      "default_profile": "contoso-prod",
      "profiles": {"contoso-prod": {"tenant_id": "...", "client_id": "...", ...}}
    }

Client secrets and certificate passwords are not written to the file.
They are read from M365_CLIENT_SECRET / M365_CERT_PASSWORD or prompted for.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

from .config import AUTH_MODES, CertificateAuth, ClientSecretAuth, DelegatedAuth

logger = logging.getLogger("m365_admin.profiles")

_PROFILES_FILE = Path.home() / ".m365_admin" / "profiles.json"

AuthSettings = Union[CertificateAuth, ClientSecretAuth, DelegatedAuth]


@dataclass
class TenantProfile:
    """Connection settings for one tenant."""
    name: str
    tenant_id: str
    client_id: str
    auth_mode: str = "certificate"     # certificate | secret | delegated
    cert_path: str = "./base64.txt"    # base64 PFX, certificate mode only
    default_domain: str = ""           # UPN suffix for new users
    tenant_display_name: str = ""
    notes: str = ""

    def __post_init__(self):
        if not self.name:
            raise ValueError("A profile needs a name")
        if not self.tenant_id or not self.client_id:
            raise ValueError(f"Profile '{self.name}' needs a tenant_id and a client_id")
        if self.auth_mode not in AUTH_MODES:
            raise ValueError(f"auth_mode must be one of {', '.join(AUTH_MODES)}")

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "TenantProfile":
        known = {f.name for f in fields(cls)} - {"name"}
        return cls(name=name, **{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("name")
        return data

    @property
    def label(self) -> str:
        if self.tenant_display_name:
            return f"{self.name} ({self.tenant_display_name})"
        return self.name

    def resolve_cert_path(self) -> str:
        """Absolute certificate path; `~` and relative paths are expanded."""
        path = Path(self.cert_path).expanduser()
        if not path.is_absolute():
            path = Path.cwd() / path
        return str(path)

    def auth_settings(self, cert_path: Optional[str] = None) -> AuthSettings:
        """Auth config for this profile's mode; secrets are filled in later."""
        if self.auth_mode == "secret":
            return ClientSecretAuth(tenant_id=self.tenant_id, client_id=self.client_id)
        if self.auth_mode == "delegated":
            return DelegatedAuth(tenant_id=self.tenant_id, client_id=self.client_id)
        return CertificateAuth(
            tenant_id=self.tenant_id,
            client_id=self.client_id,
            certificate_path=cert_path or self.resolve_cert_path(),
        )


@dataclass
class ProfileStore:
    """The set of saved profiles plus the name of the default one."""
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""

    @classmethod
    def load(cls) -> "ProfileStore":
        """Read the profiles file; a missing or unreadable file gives an empty store."""
        if not _PROFILES_FILE.exists():
            return cls()
        try:
            raw = json.loads(_PROFILES_FILE.read_text(encoding="utf-8"))
            profiles = {
                name: TenantProfile.from_dict(name, data)
                for name, data in raw.get("profiles", {}).items()
            }
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            print(f"  ⚠  Ignoring unreadable {_PROFILES_FILE.name}: {e}")
            return cls()
        default = raw.get("default_profile", "")
        return cls(profiles=profiles, default_profile=default if default in profiles else "")

    def save(self) -> None:
        _PROFILES_FILE.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "default_profile": self.default_profile,
            "profiles": {name: p.to_dict() for name, p in sorted(self.profiles.items())},
        }
        _PROFILES_FILE.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        logger.debug(f"Saved {len(self.profiles)} profile(s) to {_PROFILES_FILE}")

    def _key(self, name: str) -> Optional[str]:
        wanted = name.lower()
        return next((key for key in self.profiles if key.lower() == wanted), None)

    def get(self, name: str) -> Optional[TenantProfile]:
        """Profile by name, ignoring case."""
        key = self._key(name)
        return self.profiles[key] if key else None

    def add(self, profile: TenantProfile, set_default: bool = False) -> bool:
        """
        Save a profile, replacing one with the same name (any case).
        The first profile saved becomes the default. Returns True if a
        profile was replaced.
        """
        existing = self._key(profile.name)
        if existing:
            del self.profiles[existing]
            if self.default_profile == existing:
                self.default_profile = profile.name
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()
        return existing is not None

    def remove(self, name: str) -> bool:
        """Delete a profile. Removing the default promotes the first remaining name."""
        key = self._key(name)
        if key is None:
            return False
        del self.profiles[key]
        if self.default_profile == key:
            self.default_profile = min(self.profiles, default="")
        self.save()
        return True

    def set_default(self, name: str) -> bool:
        key = self._key(name)
        if key is None:
            return False
        self.default_profile = key
        self.save()
        return True

    def get_default(self) -> Optional[TenantProfile]:
        return self.profiles.get(self.default_profile)

    def list_profiles(self) -> list[TenantProfile]:
        return [self.profiles[k] for k in sorted(self.profiles)]


def resolve_profile(profile_name: Optional[str] = None) -> Optional[TenantProfile]:
    """The named profile, or the default one when no name is given."""
    store = ProfileStore.load()
    return store.get(profile_name) if profile_name else store.get_default()
