"""TOTP multi-factor authentication with single-use recovery codes."""

import hmac
import secrets
import time
from datetime import UTC, datetime
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import pyotp

from trustcore.config import settings
from trustcore.exceptions import AuthFailureError, ValidationError
from trustcore.logging.config import get_logger
from trustcore.models.mfa import (
    MFACredential,
    MFAEnableResult,
    MFASetup,
    MFAState,
    MFAStatusSummary,
    RecoveryCode,
    RecoveryCodeResult,
)

logger = get_logger(__name__)

TOTP_PERIOD = 30
TOTP_DIGITS = 6
TOTP_ALGORITHM = "SHA1"
# Accepted counters are current-1 .. current+1
DRIFT_WINDOWS = 1


def generate_secret() -> str:
    """160 random bits, Base32 without padding."""
    return pyotp.random_base32(length=32)


def build_enrollment_uri(secret: str, account_label: str, issuer: str | None = None) -> str:
    """
    Build the otpauth:// URI an authenticator app enrolls from.

    Algorithm, digits and period are always spelled out, even at their
    defaults.

    Args:
        secret: Base32 shared secret
        account_label: Usually the user's email
        issuer: Displayed issuer name (defaults to settings.mfa_issuer)

    Returns:
        Enrollment URI
    """
    issuer = issuer or settings.mfa_issuer
    label = f"{quote(issuer, safe='')}:{quote(account_label, safe='')}"
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{query}"


def compute_code(secret: str, counter: int) -> str:
    """
    RFC 4226 code for one counter value.

    Args:
        secret: Base32 shared secret
        counter: Counter value (time step for TOTP)

    Returns:
        Zero-padded 6-digit code
    """
    return pyotp.HOTP(secret, digits=TOTP_DIGITS).at(counter)


def verify_code(secret: str, submitted: str, now: float | None = None) -> bool:
    """
    Check a submitted TOTP code, allowing one period of drift each way.

    Args:
        secret: Base32 shared secret
        submitted: Code as typed by the user; whitespace is ignored
        now: Epoch seconds (defaults to the current time)

    Returns:
        True if the code matches any accepted time step
    """
    if not isinstance(submitted, str) or not secret:
        return False
    code = "".join(submitted.split())
    if len(code) != TOTP_DIGITS or not (code.isascii() and code.isdigit()):
        return False

    now = time.time() if now is None else now
    counter = int(now // TOTP_PERIOD)
    matched = False
    try:
        for offset in range(-DRIFT_WINDOWS, DRIFT_WINDOWS + 1):
            step = counter + offset
            if step < 0:
                continue
            expected = compute_code(secret, step)
            # No early exit: every step is compared
            if hmac.compare_digest(expected.encode("ascii"), code.encode("ascii")):
                matched = True
    except ValueError:
        # Secret is not valid Base32
        return False
    return matched


def _format_recovery_code(raw: str) -> str:
    return f"{raw[:4]}-{raw[4:]}"


def _normalize_recovery_code(code: str) -> str:
    return "".join(code.split()).replace("-", "").upper()


def generate_recovery_codes(count: int = 10) -> list[RecoveryCode]:
    """
    Issue fresh, unused recovery codes.

    Args:
        count: Number of codes

    Returns:
        Codes in XXXX-XXXX upper-case hex form, unique within the set
    """
    if count < 1:
        raise ValidationError("Recovery code count must be positive", field="count")
    seen: set[str] = set()
    codes: list[RecoveryCode] = []
    while len(codes) < count:
        raw = secrets.token_hex(4).upper()
        if raw in seen:
            continue
        seen.add(raw)
        codes.append(RecoveryCode(code=_format_recovery_code(raw)))
    return codes


def consume_recovery_code(
    codes: list[RecoveryCode], submitted: str, now: float | None = None
) -> RecoveryCodeResult:
    """
    Use up one recovery code.

    The input list is not modified; the caller persists `updated_codes`.

    Args:
        codes: Current recovery codes
        submitted: Code as typed; case, dashes and whitespace are ignored
        now: Epoch seconds (defaults to the current time)

    Returns:
        Whether a code matched, the updated list, and how many remain unused
    """
    updated = [c.model_copy() for c in codes]
    candidate = _normalize_recovery_code(submitted) if isinstance(submitted, str) else ""

    match_index: Optional[int] = None
    if candidate:
        for index, code in enumerate(updated):
            if code.used:
                continue
            stored = _normalize_recovery_code(code.code)
            if hmac.compare_digest(stored.encode("utf-8"), candidate.encode("utf-8")):
                if match_index is None:
                    match_index = index

    if match_index is not None:
        used_at = datetime.fromtimestamp(time.time() if now is None else now, UTC)
        updated[match_index] = updated[match_index].model_copy(
            update={"used": True, "used_at": used_at}
        )

    return RecoveryCodeResult(
        valid=match_index is not None,
        updated_codes=updated,
        remaining=sum(1 for c in updated if not c.used),
    )


class MFAService:
    """
    MFA enrollment and verification.

    Credentials are passed in and returned; persisting them belongs to the
    caller's user store. Every state change is recorded in the audit log.
    """

    def __init__(
        self,
        audit_log=None,
        issuer: str | None = None,
        recovery_code_count: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize MFAService.

        Args:
            audit_log: Optional AuditLog for security events
            issuer: Issuer shown in authenticator apps
            recovery_code_count: Codes issued per set
            clock: Returns the current time as epoch seconds
        """
        self.audit_log = audit_log
        self.issuer = issuer or settings.mfa_issuer
        self.recovery_code_count = recovery_code_count or settings.mfa_recovery_code_count
        self._clock = clock

    async def _audit(self, action: str, user_id: str, **details) -> None:
        if self.audit_log is not None:
            await self.audit_log.try_record_action(
                action, user_id=user_id, resource="mfa", **details
            )

    async def setup_mfa(
        self, user_id: str, email: str, existing: MFACredential | None = None
    ) -> MFASetup:
        """
        Start enrollment: issue a secret and move the credential to PENDING.

        Args:
            user_id: Enrolling user
            email: Account label for the authenticator app
            existing: Current credential, if any

        Returns:
            Pending credential, plaintext secret and enrollment URI

        Raises:
            ValidationError: If MFA is already enabled
        """
        if not user_id or not email:
            raise ValidationError("user_id and email are required")
        if existing is not None and existing.state == MFAState.ENABLED:
            raise ValidationError("MFA is already enabled", field="state")

        secret = generate_secret()
        credential = MFACredential(user_id=user_id, secret=secret, state=MFAState.PENDING)
        await self._audit("mfa_setup", user_id)
        return MFASetup(
            credential=credential,
            secret=secret,
            uri=build_enrollment_uri(secret, email, self.issuer),
        )

    async def enable_mfa(
        self,
        user_id: str,
        secret: str,
        token: str,
        credential: MFACredential | None = None,
    ) -> MFAEnableResult:
        """
        Confirm enrollment with a first valid token.

        Args:
            user_id: Enrolling user
            secret: Secret issued by setup_mfa
            token: Current TOTP code
            credential: Pending credential, when the caller has one

        Returns:
            Enabled credential with fresh recovery codes, or the unchanged
            credential and an error when the token is wrong

        Raises:
            ValidationError: If the credential is not PENDING or the secret
                does not belong to it
        """
        if credential is None:
            credential = MFACredential(user_id=user_id, secret=secret, state=MFAState.PENDING)
        if credential.state != MFAState.PENDING:
            raise ValidationError(
                f"Cannot enable MFA from state {credential.state.value}", field="state"
            )
        if credential.user_id != user_id or not hmac.compare_digest(
            (credential.secret or "").encode("utf-8"), secret.encode("utf-8")
        ):
            raise ValidationError("Secret does not match the pending enrollment")

        if not verify_code(secret, token, self._clock()):
            logger.info(
                "MFA enable rejected",
                extra={"context": {"user_id": user_id, "reason": "invalid_token"}},
            )
            await self._audit(
                "mfa_failed", user_id, result="failure", error_message="Invalid token on enable"
            )
            return MFAEnableResult(
                success=False, credential=credential, error="Invalid verification code"
            )

        codes = generate_recovery_codes(self.recovery_code_count)
        enabled = credential.model_copy(
            update={
                "state": MFAState.ENABLED,
                "recovery_codes": codes,
                "enabled_at": datetime.fromtimestamp(self._clock(), UTC),
            }
        )
        await self._audit("mfa_enabled", user_id)
        return MFAEnableResult(
            success=True, credential=enabled, recovery_codes=[c.code for c in codes]
        )

    def verify_mfa(self, secret: str, token: str, now: float | None = None) -> bool:
        return verify_code(secret, token, self._clock() if now is None else now)

    async def use_recovery_code(
        self, user_id: str, codes: list[RecoveryCode], input_code: str
    ) -> RecoveryCodeResult:
        """
        Sign in with a recovery code instead of a TOTP code.

        Args:
            user_id: User presenting the code
            codes: The user's stored codes
            input_code: Code as typed

        Returns:
            Outcome with the updated code list to persist
        """
        result = consume_recovery_code(codes, input_code, self._clock())
        if result.valid:
            await self._audit(
                "mfa_recovery_used", user_id, metadata={"remaining": result.remaining}
            )
            if result.remaining == 0:
                logger.warning(
                    "User has no recovery codes left",
                    extra={"context": {"user_id": user_id}},
                )
        else:
            await self._audit(
                "mfa_failed", user_id, result="failure", error_message="Invalid recovery code"
            )
        return result

    async def regenerate_recovery_codes(
        self, credential: MFACredential, token: str
    ) -> MFACredential:
        """
        Replace every recovery code after re-authenticating with a TOTP code.

        Raises:
            ValidationError: If MFA is not enabled
            AuthFailureError: If the token is wrong
        """
        if credential.state != MFAState.ENABLED:
            raise ValidationError("MFA is not enabled", field="state")
        if not verify_code(credential.secret or "", token, self._clock()):
            await self._audit(
                "mfa_failed",
                credential.user_id,
                result="failure",
                error_message="Invalid token on recovery code regeneration",
            )
            raise AuthFailureError()

        updated = credential.model_copy(
            update={"recovery_codes": generate_recovery_codes(self.recovery_code_count)}
        )
        await self._audit("mfa_recovery_regenerated", credential.user_id)
        return updated

    async def disable_mfa(self, credential: MFACredential, token: str) -> MFACredential:
        """
        Turn MFA off. Requires a TOTP code or an unused recovery code.

        Returns:
            DISABLED credential with its secret and codes cleared

        Raises:
            ValidationError: If MFA is not enabled
            AuthFailureError: If neither a TOTP code nor a recovery code matches
        """
        if credential.state != MFAState.ENABLED:
            raise ValidationError("MFA is not enabled", field="state")

        now = self._clock()
        authenticated = verify_code(credential.secret or "", token, now)
        if not authenticated:
            authenticated = consume_recovery_code(credential.recovery_codes, token, now).valid
        if not authenticated:
            await self._audit(
                "mfa_failed",
                credential.user_id,
                result="failure",
                error_message="Re-authentication failed on disable",
            )
            raise AuthFailureError()

        disabled = credential.model_copy(
            update={
                "state": MFAState.DISABLED,
                "secret": None,
                "recovery_codes": [],
                "enabled_at": None,
            }
        )
        await self._audit("mfa_disabled", credential.user_id)
        return disabled

    def get_mfa_status(self, credential: MFACredential | None) -> MFAStatusSummary:
        if credential is None:
            return MFAStatusSummary(
                enabled=False, state=MFAState.UNINITIALIZED, recovery_codes_remaining=0
            )
        return MFAStatusSummary(
            enabled=credential.enabled,
            state=credential.state,
            recovery_codes_remaining=sum(1 for c in credential.recovery_codes if not c.used),
        )
