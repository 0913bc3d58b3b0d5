# backend/passkey_gate/services/passkey_service.py
"""
Passkey (WebAuthn) ceremonies.

Provides functions for:
- Issuing registration options and verifying attestation responses
- Issuing authentication options and verifying assertion responses
- Managing a user's passkeys (list, rename, delete)

Security considerations:
- Challenges are single use and expire after WEBAUTHN_CHALLENGE_TTL_SECONDS
- Authentication options never list credential IDs (discoverable flow)
- The signature counter is checked here, not by the library, so the clone
  policy (block or flag) is ours to apply
- The counter update is a compare-and-set on the value read for verification
"""

import json
import logging
import secrets
from datetime import UTC, datetime
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    bytes_to_base64url,
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    CredentialDeviceType,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from passkey_gate import crud
from passkey_gate.core.config import settings
from passkey_gate.core.log_utils import sanitize_for_log, short_id
from passkey_gate.core.security_logger import security_log
from passkey_gate.db.models.passkey import Passkey
from passkey_gate.db.models.user import User
from passkey_gate.exceptions import (
    ChallengeInvalid,
    CredentialNotFound,
    DuplicateCredential,
    LastCredentialError,
    PossibleCloneDetected,
    SubjectMismatch,
    VerificationFailed,
)
from passkey_gate.schemas.auth import VerifiedIdentity
from passkey_gate.services.challenge_store import (
    ChallengeKind,
    ChallengeStore,
    ExistingSubject,
    ProvisionalSubject,
)

logger = logging.getLogger(__name__)

# Errors py_webauthn raises while parsing or verifying client data
_VERIFY_ERRORS = (WebAuthnException, ValueError, TypeError, KeyError)


def _get_rp_id() -> str:
    """Get the Relying Party ID (domain) from settings or derive from FRONTEND_URL."""
    if settings.WEBAUTHN_RP_ID:
        return settings.WEBAUTHN_RP_ID
    parsed = urlparse(settings.FRONTEND_URL)
    return parsed.hostname or "localhost"


def _get_origin() -> str | list[str]:
    """Get the expected origin(s) for WebAuthn verification."""
    origins = settings.WEBAUTHN_ORIGINS
    return origins[0] if len(origins) == 1 else origins


def _options_dict(options) -> dict:
    return json.loads(options_to_json(options))


def _transports(values: list[str] | None) -> list[AuthenticatorTransport]:
    result = []
    for value in values or []:
        try:
            result.append(AuthenticatorTransport(value))
        except ValueError:
            # Unknown hints from newer browsers are advisory
            logger.debug("Ignoring unknown transport hint %s", sanitize_for_log(value))
    return result


def _user_verification() -> UserVerificationRequirement:
    if settings.WEBAUTHN_REQUIRE_USER_VERIFICATION:
        return UserVerificationRequirement.REQUIRED
    return UserVerificationRequirement.PREFERRED


# --- Registration ---


async def begin_registration(
    db: AsyncSession,
    store: ChallengeStore,
    identity: User | str,
) -> dict:
    """
    Issue WebAuthn registration options.

    Args:
        db: Database session
        store: Challenge store
        identity: The signed-in User adding a passkey, or the username of an
            account that will be created when the ceremony completes.

    Returns:
        Options for navigator.credentials.create(), WebAuthn JSON encoding.
    """
    if isinstance(identity, User):
        existing = await crud.passkey.list_by_user(db, user_id=identity.id)
        exclude_credentials = [
            PublicKeyCredentialDescriptor(
                id=pk.credential_id, transports=_transports(pk.transports)
            )
            for pk in existing
        ]
        subject = ExistingSubject(user_id=identity.id)
        user_handle = identity.id.bytes
        user_name = identity.username
        display_name = identity.display_name or identity.username
    else:
        exclude_credentials = []
        subject = ProvisionalSubject(username=identity)
        user_handle = secrets.token_bytes(16)
        user_name = identity
        display_name = identity

    pending = await store.issue(ChallengeKind.REGISTRATION, subject)

    options = generate_registration_options(
        rp_id=_get_rp_id(),
        rp_name=settings.WEBAUTHN_RP_NAME,
        user_id=user_handle,
        user_name=user_name,
        user_display_name=display_name,
        challenge=pending.challenge_bytes,
        timeout=settings.WEBAUTHN_CHALLENGE_TTL_SECONDS * 1000,
        attestation=AttestationConveyancePreference.NONE,
        exclude_credentials=exclude_credentials,
        authenticator_selection=AuthenticatorSelectionCriteria(
            resident_key=ResidentKeyRequirement.PREFERRED,
            user_verification=_user_verification(),
        ),
    )
    logger.debug(
        "Registration options issued for %s (%d excluded credentials)",
        sanitize_for_log(user_name),
        len(exclude_credentials),
    )
    return _options_dict(options)


async def complete_registration(
    db: AsyncSession,
    store: ChallengeStore,
    response: dict | str,
    expected_challenge: str,
    target_user_id: UUID,
    device_name: str | None = None,
    *,
    target_username: str | None = None,
) -> Passkey:
    """
    Verify a registration response and bind the credential to `target_user_id`.

    The challenge is consumed as soon as it is redeemed, whatever happens
    afterwards.

    Raises:
        ChallengeInvalid: Unknown, expired or already used challenge.
        SubjectMismatch: The challenge was issued for someone else.
        VerificationFailed: The attestation did not verify.
        DuplicateCredential: The credential ID is already registered.
        RepositoryError: Database failure.
    """
    pending = await store.redeem(expected_challenge, ChallengeKind.REGISTRATION)
    if pending is None:
        raise ChallengeInvalid(reason="registration challenge missing or expired")

    subject = pending.subject
    if isinstance(subject, ExistingSubject):
        if subject.user_id != target_user_id:
            raise SubjectMismatch(
                reason=f"challenge issued for {subject.user_id}, completed for {target_user_id}"
            )
    elif isinstance(subject, ProvisionalSubject):
        if target_username is not None and subject.username.lower() != target_username.lower():
            raise SubjectMismatch(reason="challenge issued for a different username")
    else:
        raise SubjectMismatch(reason="registration challenge without subject")

    try:
        credential = parse_registration_credential_json(response)
        verification = verify_registration_response(
            credential=credential,
            expected_challenge=pending.challenge_bytes,
            expected_rp_id=_get_rp_id(),
            expected_origin=_get_origin(),
            require_user_verification=settings.WEBAUTHN_REQUIRE_USER_VERIFICATION,
        )
    except _VERIFY_ERRORS as e:
        logger.warning(
            "WebAuthn registration verification failed for user %s: %s",
            target_user_id,
            sanitize_for_log(e),
        )
        raise VerificationFailed(reason=str(e)) from e

    if await crud.passkey.find_by_credential_id(db, credential_id=verification.credential_id):
        raise DuplicateCredential(
            reason=f"credential {short_id(verification.credential_id)} already registered"
        )

    passkey = await crud.passkey.insert(
        db,
        user_id=target_user_id,
        credential_id=verification.credential_id,
        public_key=verification.credential_public_key,
        sign_count=verification.sign_count,
        transports=[t.value for t in (credential.response.transports or [])] or None,
        aaguid=verification.aaguid or None,
        device_name=device_name or "Passkey",
        backup_eligible=verification.credential_device_type == CredentialDeviceType.MULTI_DEVICE,
        backup_state=verification.credential_backed_up,
    )
    logger.info("Passkey registered for user %s: %s", target_user_id, passkey.id)
    return passkey


# --- Authentication ---


async def begin_authentication(store: ChallengeStore) -> dict:
    """
    Issue WebAuthn authentication options for discoverable credentials.

    No user lookup happens here and allowCredentials is always empty, so the
    response reveals nothing about which accounts or credentials exist.
    """
    pending = await store.issue(ChallengeKind.AUTHENTICATION)
    options = generate_authentication_options(
        rp_id=_get_rp_id(),
        challenge=pending.challenge_bytes,
        timeout=settings.WEBAUTHN_CHALLENGE_TTL_SECONDS * 1000,
        allow_credentials=[],
        user_verification=_user_verification(),
    )
    return _options_dict(options)


def is_possible_clone(stored_count: int, reported_count: int) -> bool:
    """A counter that did not increase, unless neither side implements one."""
    return (stored_count != 0 or reported_count != 0) and reported_count <= stored_count


async def complete_authentication(
    db: AsyncSession,
    store: ChallengeStore,
    response: dict | str,
    expected_challenge: str,
    *,
    client_ip: str | None = None,
) -> VerifiedIdentity:
    """
    Verify an assertion and return the identity it proves.

    Raises:
        ChallengeInvalid: Unknown, expired or already used challenge.
        CredentialNotFound: No stored credential has this ID.
        VerificationFailed: Bad signature, origin, RP ID or challenge.
        PossibleCloneDetected: Counter did not increase (block policy), or a
            concurrent login updated the counter first.
        RepositoryError: Database failure.
    """
    pending = await store.redeem(expected_challenge, ChallengeKind.AUTHENTICATION)
    if pending is None:
        raise ChallengeInvalid(reason="authentication challenge missing or expired")

    try:
        credential = parse_authentication_credential_json(response)
    except _VERIFY_ERRORS as e:
        raise VerificationFailed(reason=f"unparseable assertion: {e}") from e

    passkey = await crud.passkey.find_by_credential_id(db, credential_id=credential.raw_id)
    if passkey is None:
        raise CredentialNotFound(reason=f"unknown credential {short_id(credential.raw_id)}")

    stored_count = passkey.sign_count
    try:
        # Counter comparison happens below; 0 turns off the library's own check
        verification = verify_authentication_response(
            credential=credential,
            expected_challenge=pending.challenge_bytes,
            expected_rp_id=_get_rp_id(),
            expected_origin=_get_origin(),
            credential_public_key=passkey.public_key,
            credential_current_sign_count=0,
            require_user_verification=settings.WEBAUTHN_REQUIRE_USER_VERIFICATION,
        )
    except _VERIFY_ERRORS as e:
        logger.warning(
            "WebAuthn authentication verification failed for passkey %s: %s",
            passkey.id,
            sanitize_for_log(e),
        )
        raise VerificationFailed(reason=str(e)) from e

    reported_count = verification.new_sign_count
    if is_possible_clone(stored_count, reported_count):
        security_log.clone_suspected(
            client_ip or "unknown", short_id(passkey.credential_id), stored_count, reported_count
        )
        logger.error(
            "Possible cloned authenticator! Passkey %s: reported=%d stored=%d (policy=%s)",
            passkey.id,
            reported_count,
            stored_count,
            settings.WEBAUTHN_CLONE_POLICY,
        )
        if settings.WEBAUTHN_CLONE_POLICY == "block":
            raise PossibleCloneDetected(
                reason=f"sign count {reported_count} not greater than {stored_count}"
            )

    now = datetime.now(UTC)
    updated = await crud.passkey.update_counter_and_last_used(
        db,
        passkey_id=passkey.id,
        expected_sign_count=stored_count,
        new_sign_count=reported_count,
        last_used_at=now,
    )
    if not updated:
        raise PossibleCloneDetected(
            reason=f"counter for passkey {passkey.id} changed during verification"
        )

    logger.info("User %s authenticated via passkey %s", passkey.user_id, passkey.id)
    return VerifiedIdentity(
        user_id=passkey.user_id,
        credential_id=bytes_to_base64url(passkey.credential_id),
        verified_at=now,
    )


# --- Management ---


async def list_user_passkeys(db: AsyncSession, user: User) -> list[dict]:
    """Get all passkeys for a user."""
    passkeys = await crud.passkey.list_by_user(db, user_id=user.id)
    return [
        {
            "id": str(pk.id),
            "credential_id": bytes_to_base64url(pk.credential_id),
            "device_name": pk.device_name,
            "created_at": pk.created_at.isoformat() if pk.created_at else None,
            "last_used_at": pk.last_used_at.isoformat() if pk.last_used_at else None,
            "transports": pk.transports or [],
            "backup_eligible": pk.backup_eligible,
            "backup_state": pk.backup_state,
        }
        for pk in passkeys
    ]


async def rename_passkey(db: AsyncSession, user: User, passkey_id: UUID, new_name: str) -> bool:
    """Rename a passkey. Returns True if successful."""
    return await crud.passkey.rename(
        db, user_id=user.id, passkey_id=passkey_id, device_name=new_name.strip()
    )


async def delete_passkey(db: AsyncSession, user: User, passkey_id: UUID) -> bool:
    """
    Delete a passkey.

    Accounts have no password, so the last passkey cannot be deleted.

    Returns True if deleted, False if the user has no such passkey.

    Raises:
        LastCredentialError: It is the user's only passkey.
    """
    if await crud.passkey.delete(db, user_id=user.id, passkey_id=passkey_id):
        return True

    owned = {pk.id for pk in await crud.passkey.list_by_user(db, user_id=user.id)}
    if passkey_id in owned:
        raise LastCredentialError(reason=f"passkey {passkey_id} is the only one for {user.id}")
    return False
