"""Self-signed mutual-TLS trust provisioning for a signing service and its client."""

from .allowlist import (
    FingerprintFormat,
    TrustAllowlist,
    TrustRecord,
    certificate_fingerprint,
    export_fingerprint,
    format_fingerprint,
)
from .config import PartyConfig, ProvisionConfig
from .exceptions import (
    ExportError,
    IdentityGenerationError,
    PackagingError,
    ProvisionConfigurationError,
    ProvisionError,
    ProvisionStepError,
)
from .identity import PartyIdentity, generate_identity, load_identity, write_identity
from .logging_utils import configure_logging
from .pkcs12_bundle import (
    BundleMode,
    bundle_modes_for,
    describe_bundle,
    load_bundle,
    package_bundle,
    write_bundle,
)
from .profiles import (
    CONSUMER_PROFILES,
    MAX_VALIDITY_DAYS,
    ConsumerProfile,
    IdentityKeyProfile,
    get_consumer_profile,
    list_consumer_profiles,
)
from .provisioner import ProvisionReport, Provisioner, VerificationIssue, provision
from .x509_ops import DistinguishedName

__all__ = [
    "CONSUMER_PROFILES",
    "MAX_VALIDITY_DAYS",
    "BundleMode",
    "ConsumerProfile",
    "DistinguishedName",
    "ExportError",
    "FingerprintFormat",
    "IdentityGenerationError",
    "IdentityKeyProfile",
    "PackagingError",
    "PartyConfig",
    "PartyIdentity",
    "ProvisionConfig",
    "ProvisionConfigurationError",
    "ProvisionError",
    "ProvisionReport",
    "ProvisionStepError",
    "Provisioner",
    "TrustAllowlist",
    "TrustRecord",
    "VerificationIssue",
    "bundle_modes_for",
    "certificate_fingerprint",
    "configure_logging",
    "describe_bundle",
    "export_fingerprint",
    "format_fingerprint",
    "generate_identity",
    "get_consumer_profile",
    "list_consumer_profiles",
    "load_bundle",
    "load_identity",
    "package_bundle",
    "provision",
    "write_bundle",
    "write_identity",
]
