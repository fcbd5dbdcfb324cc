class ProvisionError(RuntimeError):
    """Base provisioning error."""


class ProvisionConfigurationError(ProvisionError):
    """Configuration is invalid or exceeds a consumer constraint."""


class IdentityGenerationError(ProvisionError):
    """Key generation or certificate signing failed."""


class PackagingError(ProvisionError):
    """A PKCS#12 bundle could not be produced or read."""


class ExportError(ProvisionError):
    """A certificate or allowlist could not be exported."""


class ProvisionStepError(ProvisionError):
    """An orchestrated step failed; earlier artifacts are left in place."""

    def __init__(self, party: str, step: str, message: str) -> None:
        super().__init__(f"[{party}] {step} failed: {message}")
        self.party = party
        self.step = step


def format_exception(exc: BaseException) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__
