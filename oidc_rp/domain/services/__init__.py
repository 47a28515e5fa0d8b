"""Identity services.

Services in this package:
- IdentityResolver: claims to principal lookup
- AutoProvisioningEngine: just-in-time provisioning and attribute sync
"""

from oidc_rp.domain.services.identity import IdentityResolver, NeedsProvisioning
from oidc_rp.domain.services.provisioning import AutoProvisioningEngine, lookup_or_provision

__all__ = [
    "AutoProvisioningEngine",
    "IdentityResolver",
    "NeedsProvisioning",
    "lookup_or_provision",
]
