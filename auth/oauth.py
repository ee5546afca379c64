"""
auth/oauth.py -- OAuth provider metadata for the login screen.

The hosted identity service runs the actual redirect flow (see
backend/remote.py for the PKCE half). This module only decides which
providers the dashboard offers: a provider is offered when it is listed in
Settings.oauth_providers AND the configured backend can run OAuth at all.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from core.config import Settings

# provider name -> button label
PROVIDER_LABELS = {
    "google": "Google",
    "github": "GitHub",
    "azure": "Microsoft",
    "gitlab": "GitLab",
}


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for every usable provider.

    The local prototype backend cannot run OAuth, so nothing is offered there.
    Unknown provider names fall back to a capitalized label.
    """
    if settings.backend != "remote":
        return []
    providers: list[dict] = []
    for name in settings.oauth_providers:
        key = name.strip().lower()
        if key:
            providers.append({"name": key, "label": PROVIDER_LABELS.get(key, key.capitalize())})
    return providers


def is_enabled(settings: Settings, provider: str) -> bool:
    return any(p["name"] == provider.lower() for p in get_enabled_providers(settings))
