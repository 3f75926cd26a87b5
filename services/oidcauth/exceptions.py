"""Error taxonomy for the OIDC login flow.

Every error carries the HTTP status the router answers with and the message
that is safe to show to the end user. Internal detail stays in ``str(exc)``
and goes to the log only.
"""


class OIDCAuthError(Exception):
    """Base exception for relying-party failures."""

    status_code: int = 401
    public_message: str = "Authentication failed"


class ConfigurationError(OIDCAuthError):
    """Required settings are missing or invalid. Surfaced to administrators."""

    status_code = 500
    public_message = "OpenID Connect is not configured correctly"


class StateMismatchError(OIDCAuthError):
    """Anti-forgery state missing, expired or already consumed."""

    status_code = 400
    public_message = "Authentication failed, please start the login again"


class TokenExchangeError(OIDCAuthError):
    """The IdP token endpoint failed or answered with an unusable body."""

    status_code = 502
    public_message = "Could not complete sign-in with the identity provider, please retry"


class MalformedTokenError(OIDCAuthError):
    """The identity token is not a well-formed compact JWT."""


class InvalidTokenError(OIDCAuthError):
    """The identity token is expired, for another audience, or from another issuer."""


class SignatureInvalidError(InvalidTokenError):
    """The identity token signature does not verify against the IdP keys."""


class KeyRetrievalError(OIDCAuthError):
    """The IdP key set could not be fetched or parsed."""

    status_code = 502


class RestrictedUserError(OIDCAuthError):
    """The identity does not match any configured user restriction."""

    status_code = 403
    public_message = "Your account is not permitted to sign in to this site"


class NotFoundError(OIDCAuthError):
    """A token-store record that must exist does not."""


class ConflictError(OIDCAuthError):
    """A token-store write would break the one-record-per-username rule.

    Answers like any other authentication failure, so responses do not tell
    whether a local account exists.
    """


class LoginStateError(OIDCAuthError):
    """A login attempt was driven through an illegal state transition."""

    status_code = 400


class CapabilityError(OIDCAuthError):
    """The acting user lacks the capability for a connection change."""

    status_code = 403
    public_message = "You do not have permission to change this connection"
