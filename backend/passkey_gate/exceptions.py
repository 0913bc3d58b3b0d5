class PasskeyError(Exception):
    """Base exception for the passkey core.

    `code` is a stable identifier for logs and telemetry. `reason` carries the
    internal detail (library message, counter values, ...) and is never sent
    to clients.
    """

    code = "passkey_error"

    def __init__(self, message: str | None = None, *, reason: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.reason = reason


class CeremonyError(PasskeyError):
    """A registration or authentication ceremony was rejected."""

    code = "ceremony_error"


class ChallengeInvalid(CeremonyError):
    """Ceremony expired or invalid."""

    code = "challenge_invalid"


class SubjectMismatch(CeremonyError):
    """Challenge was issued for a different user."""

    code = "subject_mismatch"


class VerificationFailed(CeremonyError):
    """Attestation or assertion did not verify."""

    code = "verification_failed"


class CredentialNotFound(CeremonyError):
    """No stored credential matches the response."""

    code = "credential_not_found"


class DuplicateCredential(CeremonyError):
    """Credential ID is already registered."""

    code = "duplicate_credential"


class PossibleCloneDetected(CeremonyError):
    """Signature counter did not increase."""

    code = "possible_clone_detected"


class RepositoryError(PasskeyError):
    """Persistence layer failure."""

    code = "repository_error"


class LastCredentialError(PasskeyError):
    """Refusing to delete the only passkey of a passwordless account."""

    code = "last_credential"


class UsernameTaken(PasskeyError):
    """Username is already in use."""

    code = "username_taken"
