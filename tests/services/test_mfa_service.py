"""Tests for TOTP verification, recovery codes and the MFA state machine."""

import re
from urllib.parse import parse_qs, urlsplit

import pyotp
import pytest

from trustcore.exceptions import AuthFailureError, ValidationError
from trustcore.models.mfa import MFACredential, MFAState, RecoveryCode
from trustcore.repositories.audit_repository import InMemoryAuditRepository
from trustcore.services.audit_service import AuditLog
from trustcore.services.mfa_service import (
    MFAService,
    build_enrollment_uri,
    compute_code,
    consume_recovery_code,
    generate_recovery_codes,
    generate_secret,
    verify_code,
)

T = 1_699_999_980
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"  # b"12345678901234567890"


@pytest.fixture
def audit_log(clock) -> AuditLog:
    return AuditLog(InMemoryAuditRepository(), clock=clock)


@pytest.fixture
def mfa(audit_log: AuditLog, clock) -> MFAService:
    return MFAService(audit_log, issuer="TIME Trading", recovery_code_count=10, clock=clock)


async def _actions(audit_log: AuditLog) -> list[str]:
    page = await audit_log.search()
    return [e.action for e in page.events]


class TestTotp:
    """RFC 6238 code generation and verification."""

    def test_secret_is_base32_160_bits(self) -> None:
        secret = generate_secret()
        assert len(secret) == 32
        assert re.fullmatch(r"[A-Z2-7]{32}", secret)

    def test_rfc4226_vectors(self) -> None:
        assert compute_code(RFC_SECRET, 0) == "755224"
        assert compute_code(RFC_SECRET, 1) == "287082"
        assert compute_code(RFC_SECRET, 9) == "520489"

    def test_matches_reference_totp(self) -> None:
        secret = generate_secret()
        assert compute_code(secret, T // 30) == pyotp.TOTP(secret).at(T)

    def test_round_trip_with_drift(self) -> None:
        """Accepted in its own window and the next, rejected two windows later."""
        secret = generate_secret()
        code = compute_code(secret, T // 30)

        assert verify_code(secret, code, T) is True
        assert verify_code(secret, code, T + 31) is True
        assert verify_code(secret, code, T + 61) is False

    def test_previous_window_accepted(self) -> None:
        secret = generate_secret()
        code = compute_code(secret, T // 30 - 1)
        assert verify_code(secret, code, T) is True

    def test_whitespace_ignored(self) -> None:
        secret = generate_secret()
        code = compute_code(secret, T // 30)
        assert verify_code(secret, f" {code[:3]} {code[3:]} ", T) is True

    @pytest.mark.parametrize("submitted", ["", "12345", "1234567", "abcdef", "١٢٣٤٥٦"])
    def test_malformed_codes_rejected(self, submitted: str) -> None:
        assert verify_code(generate_secret(), submitted, T) is False

    def test_invalid_secret_rejected(self) -> None:
        assert verify_code("not base32!", "123456", T) is False
        assert verify_code("", "123456", T) is False

    def test_enrollment_uri(self) -> None:
        uri = build_enrollment_uri("JBSWY3DPEHPK3PXP", "trader@example.com", "TIME Trading")
        parts = urlsplit(uri)
        query = parse_qs(parts.query)

        assert parts.scheme == "otpauth"
        assert parts.netloc == "totp"
        assert parts.path == "/TIME%20Trading:trader%40example.com"
        assert query == {
            "secret": ["JBSWY3DPEHPK3PXP"],
            "issuer": ["TIME Trading"],
            "algorithm": ["SHA1"],
            "digits": ["6"],
            "period": ["30"],
        }


class TestRecoveryCodes:
    def test_generated_format_and_uniqueness(self) -> None:
        codes = generate_recovery_codes(10)

        assert len(codes) == 10
        assert len({c.code for c in codes}) == 10
        assert all(re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}", c.code) for c in codes)
        assert not any(c.used for c in codes)

    def test_count_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            generate_recovery_codes(0)

    def test_single_use(self) -> None:
        codes = generate_recovery_codes(3)
        target = codes[1].code

        first = consume_recovery_code(codes, target, T)
        second = consume_recovery_code(first.updated_codes, target, T)

        assert first.valid is True
        assert first.remaining == 2
        assert first.updated_codes[1].used is True
        assert first.updated_codes[1].used_at is not None
        assert second.valid is False
        assert second.remaining == 2

    def test_input_list_not_mutated(self) -> None:
        codes = generate_recovery_codes(2)
        consume_recovery_code(codes, codes[0].code, T)
        assert codes[0].used is False

    def test_case_and_dashes_ignored(self) -> None:
        codes = [RecoveryCode(code="ABCD-1234")]
        assert consume_recovery_code(codes, "abcd1234", T).valid is True
        assert consume_recovery_code(codes, " ab cd-12 34 ", T).valid is True

    def test_unknown_code(self) -> None:
        codes = generate_recovery_codes(2)
        result = consume_recovery_code(codes, "0000-0000", T)
        assert result.valid is False
        assert result.remaining == 2


class TestMfaService:
    """Enrollment state machine: UNINITIALIZED -> PENDING -> ENABLED -> DISABLED."""

    @pytest.mark.asyncio
    async def test_setup_returns_pending_credential(
        self, mfa: MFAService, audit_log: AuditLog
    ) -> None:
        setup = await mfa.setup_mfa("user-1", "trader@example.com")

        assert setup.credential.state == MFAState.PENDING
        assert setup.credential.secret == setup.secret
        assert setup.uri.startswith("otpauth://totp/TIME%20Trading:")
        assert await _actions(audit_log) == ["mfa_setup"]

    @pytest.mark.asyncio
    async def test_setup_refused_when_enabled(self, mfa: MFAService) -> None:
        enabled = MFACredential(user_id="user-1", secret="X" * 32, state=MFAState.ENABLED)
        with pytest.raises(ValidationError):
            await mfa.setup_mfa("user-1", "trader@example.com", existing=enabled)

    @pytest.mark.asyncio
    async def test_enable_with_valid_token(self, mfa: MFAService, audit_log: AuditLog) -> None:
        setup = await mfa.setup_mfa("user-1", "trader@example.com")
        token = compute_code(setup.secret, T // 30)

        result = await mfa.enable_mfa("user-1", setup.secret, token, setup.credential)

        assert result.success is True
        assert result.credential.state == MFAState.ENABLED
        assert result.credential.enabled is True
        assert len(result.recovery_codes) == 10
        assert [c.code for c in result.credential.recovery_codes] == result.recovery_codes
        assert "mfa_enabled" in await _actions(audit_log)

    @pytest.mark.asyncio
    async def test_enable_with_wrong_token(self, mfa: MFAService, audit_log: AuditLog) -> None:
        setup = await mfa.setup_mfa("user-1", "trader@example.com")
        wrong = compute_code(setup.secret, T // 30 + 5)

        result = await mfa.enable_mfa("user-1", setup.secret, wrong, setup.credential)

        assert result.success is False
        assert result.credential.state == MFAState.PENDING
        assert result.recovery_codes == []
        assert "mfa_failed" in await _actions(audit_log)

    @pytest.mark.asyncio
    async def test_enable_requires_pending(self, mfa: MFAService) -> None:
        credential = MFACredential(user_id="user-1", secret="X" * 32, state=MFAState.ENABLED)
        with pytest.raises(ValidationError):
            await mfa.enable_mfa("user-1", "X" * 32, "123456", credential)

    @pytest.mark.asyncio
    async def test_enable_rejects_foreign_secret(self, mfa: MFAService) -> None:
        setup = await mfa.setup_mfa("user-1", "trader@example.com")
        other = generate_secret()
        with pytest.raises(ValidationError):
            await mfa.enable_mfa(
                "user-1", other, compute_code(other, T // 30), setup.credential
            )

    @pytest.mark.asyncio
    async def test_verify_uses_injected_clock(self, mfa: MFAService, clock) -> None:
        secret = generate_secret()
        code = compute_code(secret, T // 30)

        assert mfa.verify_mfa(secret, code) is True
        clock.advance(61)
        assert mfa.verify_mfa(secret, code) is False

    @pytest.mark.asyncio
    async def test_use_recovery_code(self, mfa: MFAService, audit_log: AuditLog) -> None:
        codes = generate_recovery_codes(1)

        result = await mfa.use_recovery_code("user-1", codes, codes[0].code)
        again = await mfa.use_recovery_code("user-1", result.updated_codes, codes[0].code)

        assert result.valid is True
        assert result.remaining == 0
        assert again.valid is False
        actions = await _actions(audit_log)
        assert "mfa_recovery_used" in actions
        assert "mfa_failed" in actions

    @pytest.mark.asyncio
    async def test_regenerate_recovery_codes(self, mfa: MFAService) -> None:
        setup = await mfa.setup_mfa("user-1", "trader@example.com")
        token = compute_code(setup.secret, T // 30)
        enabled = (await mfa.enable_mfa("user-1", setup.secret, token, setup.credential)).credential

        regenerated = await mfa.regenerate_recovery_codes(enabled, token)

        assert len(regenerated.recovery_codes) == 10
        old = {c.code for c in enabled.recovery_codes}
        assert not old & {c.code for c in regenerated.recovery_codes}

    @pytest.mark.asyncio
    async def test_regenerate_requires_valid_token(self, mfa: MFAService) -> None:
        credential = MFACredential(
            user_id="user-1",
            secret=generate_secret(),
            state=MFAState.ENABLED,
            recovery_codes=generate_recovery_codes(2),
        )
        with pytest.raises(AuthFailureError):
            await mfa.regenerate_recovery_codes(credential, "abcdef")

    @pytest.mark.asyncio
    async def test_disable_with_totp(self, mfa: MFAService, audit_log: AuditLog) -> None:
        secret = generate_secret()
        credential = MFACredential(
            user_id="user-1", secret=secret, state=MFAState.ENABLED,
            recovery_codes=generate_recovery_codes(2),
        )

        disabled = await mfa.disable_mfa(credential, compute_code(secret, T // 30))

        assert disabled.state == MFAState.DISABLED
        assert disabled.secret is None
        assert disabled.recovery_codes == []
        assert "mfa_disabled" in await _actions(audit_log)

    @pytest.mark.asyncio
    async def test_disable_with_recovery_code(self, mfa: MFAService) -> None:
        codes = generate_recovery_codes(2)
        credential = MFACredential(
            user_id="user-1", secret=generate_secret(), state=MFAState.ENABLED,
            recovery_codes=codes,
        )

        disabled = await mfa.disable_mfa(credential, codes[0].code)

        assert disabled.state == MFAState.DISABLED

    @pytest.mark.asyncio
    async def test_disable_rejects_bad_token(self, mfa: MFAService) -> None:
        credential = MFACredential(
            user_id="user-1", secret=generate_secret(), state=MFAState.ENABLED,
            recovery_codes=generate_recovery_codes(2),
        )
        with pytest.raises(AuthFailureError):
            await mfa.disable_mfa(credential, "not-a-code")

    @pytest.mark.asyncio
    async def test_disable_requires_enabled(self, mfa: MFAService) -> None:
        credential = MFACredential(user_id="user-1", state=MFAState.PENDING, secret="X" * 32)
        with pytest.raises(ValidationError):
            await mfa.disable_mfa(credential, "123456")

    def test_status(self, mfa: MFAService) -> None:
        assert mfa.get_mfa_status(None).state == MFAState.UNINITIALIZED

        codes = generate_recovery_codes(3)
        codes[0] = codes[0].model_copy(update={"used": True})
        credential = MFACredential(
            user_id="user-1", secret="X" * 32, state=MFAState.ENABLED, recovery_codes=codes
        )
        status = mfa.get_mfa_status(credential)

        assert status.enabled is True
        assert status.recovery_codes_remaining == 2
