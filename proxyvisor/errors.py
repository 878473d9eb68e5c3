"""
Exceptions raised by proxyvisor.

Every failure the supervisor can act on derives from ProxyvisorError, which
carries an optional remediation hint shown next to the error in the logs.
"""


class ProxyvisorError(Exception):
    """Base exception for supervisor operations."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        if self.suggestion:
            return f"{self.message} ({self.suggestion})"
        return self.message


class ConfigurationError(ProxyvisorError):
    """Required configuration is missing or malformed."""

    pass


class ReadinessTimeout(ProxyvisorError):
    """The upstream service never became reachable."""

    pass


class VerificationFailure(ProxyvisorError):
    """The domain does not resolve to this instance's public address."""

    def __init__(self, message: str, result=None, suggestion: str = None):
        self.result = result
        super().__init__(message, suggestion)


class IssuanceFailure(ProxyvisorError):
    """The ACME client failed to obtain a new certificate."""

    pass


class RenewalFailure(ProxyvisorError):
    """The ACME client failed to renew the certificate."""

    pass


class InvalidConfig(ProxyvisorError):
    """The proxy rejected the rendered configuration."""

    pass


class ReloadFailure(ProxyvisorError):
    """The proxy rejected a live reload."""

    pass
