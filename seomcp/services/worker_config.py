"""Credential and TOML config artifacts consumed by the seo-mcp worker.

Two flavours:
- Per-request artifacts for the proxy spawner (caller-supplied service account
  plus GSC/GA4 properties), built by `build_worker_toml`.
- Per-account configs for long-lived workers (`UserConfigStore`), regenerated
  from the account's stored Google OAuth tokens before each scheduled run.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse


SC_DOMAIN_PREFIX = "sc-domain:"
GA4_PREFIX = "properties/"

SA_REQUIRED_FIELDS = ("type", "project_id", "private_key_id", "private_key", "client_email")


class CredentialError(ValueError):
    """Caller-supplied credential bundle is unusable."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class CredentialBundle:
    """Authorization document plus optional site/property identifiers.

    Never persisted; lives in temp files only for the lifetime of one worker.
    """

    service_account: Dict[str, Any]
    gsc_property: Optional[str] = None
    ga4_property: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "CredentialBundle":
        if not isinstance(payload, dict):
            raise CredentialError("Missing 'credentials' object", "MISSING_CREDENTIALS")

        sa = payload.get("google_service_account")
        if not isinstance(sa, dict) or not sa:
            raise CredentialError("Missing 'credentials.google_service_account' object", "MISSING_SA")

        for name in SA_REQUIRED_FIELDS:
            if not sa.get(name):
                raise CredentialError(f"Service account missing required field: {name}", "INVALID_SA")

        return cls(
            service_account=dict(sa),
            gsc_property=_opt_str(payload.get("gsc_property")),
            ga4_property=_opt_str(payload.get("ga4_property")),
        )


@dataclass(frozen=True)
class Ga4Property:
    property_id: str
    domain: Optional[str] = None


@dataclass
class PropertyValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def extract_domain(site: Optional[str]) -> str:
    """'sc-domain:example.com' -> 'example.com'; 'https://example.com/' -> 'example.com'."""
    if not site:
        return "unknown"
    if site.startswith(SC_DOMAIN_PREFIX):
        return site[len(SC_DOMAIN_PREFIX):]
    try:
        host = urlparse(site).hostname
    except ValueError:
        host = None
    return host or site


def parse_gsc_properties(value: Optional[str]) -> List[str]:
    """Split a comma-separated GSC property list; bare domains gain `sc-domain:`."""
    if not value:
        return []
    props: List[str] = []
    for item in (p.strip() for p in value.split(",")):
        if not item:
            continue
        if item.startswith((SC_DOMAIN_PREFIX, "http://", "https://")):
            props.append(item)
        else:
            props.append(SC_DOMAIN_PREFIX + item)
    return props


def parse_ga4_properties(value: Optional[str]) -> List[Ga4Property]:
    """Parse 'properties/123', '123' or '123:example.com' items."""
    if not value:
        return []
    props: List[Ga4Property] = []
    for item in (p.strip() for p in value.split(",")):
        if not item:
            continue
        prop, sep, domain = item.partition(":")
        prop = prop.strip()
        if not prop:
            continue
        prop_id = prop if prop.startswith(GA4_PREFIX) else GA4_PREFIX + prop
        props.append(Ga4Property(property_id=prop_id, domain=(domain.strip() or None) if sep else None))
    return props


def validate_property_config(credentials: CredentialBundle) -> PropertyValidation:
    errors: List[str] = []
    warnings: List[str] = []

    gsc = parse_gsc_properties(credentials.gsc_property)
    ga4 = parse_ga4_properties(credentials.ga4_property)

    if credentials.gsc_property and "," not in credentials.gsc_property and not ga4:
        warnings.append("Using a single GSC property. A comma-separated list configures multiple sites.")

    if ga4:
        unmapped = [p.property_id for p in ga4 if not p.domain]
        if unmapped:
            errors.append(
                f"GA4 properties missing domain mapping: {', '.join(unmapped)}. "
                'Use format: "propertyID:domain" (e.g., "123456789:example.com")'
            )

        if gsc:
            gsc_domains = [extract_domain(p) for p in gsc]
            ga4_domains = [p.domain for p in ga4 if p.domain]
            for domain in ga4_domains:
                if domain not in gsc_domains:
                    warnings.append(f'Domain "{domain}" in GA4 properties not found in GSC properties.')
            for domain in gsc_domains:
                if domain not in ga4_domains:
                    warnings.append(f'Domain "{domain}" in GSC properties not found in GA4 properties.')

    if gsc and ga4 and len(gsc) != len(ga4):
        warnings.append(f"Property count mismatch: {len(gsc)} GSC properties, {len(ga4)} GA4 properties.")

    if credentials.gsc_property and not gsc:
        errors.append("GSC properties are set but contain no valid properties.")
    if credentials.ga4_property and not ga4:
        errors.append("GA4 properties are set but contain no valid properties.")

    for prop in ga4:
        raw_id = prop.property_id[len(GA4_PREFIX):]
        if not raw_id.isdigit():
            errors.append(f'Invalid GA4 property ID "{raw_id}". Property ID should be numeric (e.g., 123456789).')

    return PropertyValidation(valid=not errors, errors=errors, warnings=warnings)


def escape_toml(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def build_worker_toml(credentials_path: str, credentials: CredentialBundle) -> str:
    """Minimal worker config: the credentials file plus one [[sites]] table per property."""
    lines = [
        "[credentials]",
        f'google_service_account = "{escape_toml(credentials_path)}"',
        "",
    ]

    gsc = parse_gsc_properties(credentials.gsc_property)
    ga4 = parse_ga4_properties(credentials.ga4_property)

    for i in range(max(len(gsc), len(ga4), 1)):
        gsc_prop = gsc[i] if i < len(gsc) else None
        ga4_prop = ga4[i] if i < len(ga4) else None

        # Explicit GA4 mapping wins, then the GSC property, then a positional name.
        if ga4_prop is not None and ga4_prop.domain:
            domain = ga4_prop.domain
        elif gsc_prop:
            domain = extract_domain(gsc_prop)
        elif ga4_prop is not None:
            domain = f"property-{i + 1}"
        else:
            domain = f"site-{i + 1}"

        lines.append("[[sites]]")
        lines.append(f'name = "{escape_toml(domain)}"')
        lines.append(f'domain = "{escape_toml(domain)}"')
        if gsc_prop:
            lines.append(f'gsc_property = "{escape_toml(gsc_prop)}"')
        if ga4_prop is not None:
            lines.append(f'ga4_property_id = "{escape_toml(ga4_prop.property_id)}"')
        lines.append("")

    return "\n".join(lines) + "\n"


def write_private_file(path: str, content: str) -> None:
    """Create `path` exclusively with owner-only permissions and write `content`."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(content)


@dataclass(frozen=True)
class GoogleTokens:
    access_token: str
    refresh_token: str
    expires_at: Optional[int] = None  # unix seconds


TokenLookup = Callable[[str], Optional[GoogleTokens]]

_OWNER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class UserConfigStore:
    """Per-account worker configs at <base_dir>/<owner_id>/config.toml.

    `token_lookup` returns the owner's current (decrypted) Google OAuth tokens
    or None; it is the seam to the account/token store.
    """

    def __init__(
        self,
        base_dir: str,
        *,
        token_lookup: Optional[TokenLookup] = None,
        oauth_client_id: str = "",
        oauth_client_secret: str = "",
    ) -> None:
        self.base_dir = Path(base_dir)
        self._token_lookup = token_lookup
        self._client_id = oauth_client_id
        self._client_secret = oauth_client_secret

    def config_dir(self, owner_id: str) -> Path:
        if not _OWNER_ID_RE.match(owner_id or ""):
            raise ValueError("Invalid owner ID format")
        return self.base_dir / owner_id

    def config_path(self, owner_id: str) -> Path:
        return self.config_dir(owner_id) / "config.toml"

    def has_config(self, owner_id: str) -> bool:
        return self.config_path(owner_id).exists()

    def write_config(self, owner_id: str, tokens: Optional[GoogleTokens] = None) -> str:
        cfg_dir = self.config_dir(owner_id)
        cfg_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

        creds_path = cfg_dir / "google-creds.json"
        if tokens is not None:
            creds: Dict[str, Any] = {
                "type": "authorized_user",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": tokens.refresh_token,
            }
        else:
            # Worker still starts; Google APIs fail gracefully without creds.
            creds = {}
        _write_replace(creds_path, json.dumps(creds))

        toml = (
            f"# Auto-generated worker config for account {owner_id}\n\n"
            "[credentials]\n"
            f'google_service_account = "{escape_toml(str(creds_path))}"\n'
        )
        path = self.config_path(owner_id)
        _write_replace(path, toml)
        return str(path)

    def resolve(self, owner_id: str) -> str:
        """Refresh the owner's config from stored tokens and return its path."""
        tokens = self._token_lookup(owner_id) if self._token_lookup else None
        if tokens is not None or not self.has_config(owner_id):
            return self.write_config(owner_id, tokens)
        return str(self.config_path(owner_id))


def _write_replace(path: Path, content: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(content)
    os.replace(tmp, path)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
