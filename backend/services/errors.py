"""Exception hierarchy for the Tesla sync core.

Configuration errors abort a whole run. Credential errors abort one user's
sync. OAuth state errors abort one callback. Everything else is recorded per
vehicle and the run carries on.
"""


class KmTrackError(Exception):
    """Base class for all domain errors."""


class ConfigurationError(KmTrackError):
    """A required secret or client credential is missing."""


class AuthenticationError(KmTrackError):
    """The caller could not be resolved to a user."""


class EncryptionError(KmTrackError):
    """Ciphertext could not be decrypted or was tampered with."""


class CredentialError(KmTrackError):
    """The user's Tesla credentials are unusable."""


class NotConnected(CredentialError):
    """No stored Tesla credential exists for the user."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No Tesla credentials stored for user {user_id}")


class TokenExpiredNoRefresh(CredentialError):
    """The access token expired and there is no refresh token to renew it."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Access token expired and no refresh token for user {user_id}")


class RefreshFailed(CredentialError):
    """The token endpoint rejected the refresh-token grant."""

    def __init__(self, user_id: str, status_code: int | None, response_text: str):
        self.user_id = user_id
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(f"Token refresh failed ({status_code}): {response_text[:200]}")


class OAuthStateError(KmTrackError):
    """The OAuth callback state cannot be used; the flow must restart."""

    user_message = "De Tesla-koppeling is verlopen. Probeer het opnieuw."


class InvalidState(OAuthStateError):
    user_message = "Ongeldige of reeds gebruikte koppelingsaanvraag. Start de koppeling opnieuw."

    def __init__(self):
        super().__init__("PKCE state not found (replayed or unknown)")


class ExpiredState(OAuthStateError):
    user_message = "De koppelingsaanvraag is verlopen. Start de koppeling opnieuw."

    def __init__(self, age_seconds: float):
        self.age_seconds = age_seconds
        super().__init__(f"PKCE state expired ({int(age_seconds)}s old)")


class TokenExchangeFailed(KmTrackError):
    """The authorization server rejected the code exchange."""

    def __init__(self, status_code: int | None, response_text: str):
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(f"Token exchange failed ({status_code}): {response_text[:200]}")
