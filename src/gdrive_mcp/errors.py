"""Exceptions raised by the credential lifecycle."""


class CredentialError(Exception):
    """Base class for credential lifecycle failures."""


class CredentialStoreError(CredentialError):
    """The persisted credential exists but cannot be read or parsed."""


class CredentialRefreshError(CredentialError):
    """A silent refresh with the refresh token failed."""


class AuthorizationError(CredentialError):
    """The interactive consent flow failed, timed out, or is unavailable."""


class CredentialUnavailableError(CredentialError):
    """No credential has been bound to the API clients yet."""
