"""OpenID Connect relying party - authentication core for collaboration servers.

This package verifies OpenID Connect credentials, keeps browser sessions and
bearer-token API sessions consistent with a remote identity provider, and
resolves or provisions local principals from identity provider claims.
"""

__version__ = "0.1.0"
__author__ = "oidc-rp Contributors"

from oidc_rp.config import (
    ProviderConfig,
    Settings,
    get_settings,
    load_settings_from_file,
    set_settings,
)

__all__ = [
    "ProviderConfig",
    "Settings",
    "__version__",
    "get_settings",
    "load_settings_from_file",
    "set_settings",
]
