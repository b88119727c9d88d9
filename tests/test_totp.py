"""Tests for RFC 6238 code generation and matching."""

from urllib.parse import parse_qs, urlparse

from warden.service import totp

# RFC 6238 appendix B secret ("12345678901234567890") in Base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
NOW = 1_700_000_010.0


class TestCodeGeneration:
    """Tests for code derivation."""

    def test_rfc_vector(self):
        """The 59 second vector from RFC 6238 truncates to 287082."""
        assert totp.generate_code(RFC_SECRET, 59) == "287082"

    def test_codes_are_six_digits(self):
        secret = totp.generate_secret()
        code = totp.generate_code(secret, NOW)
        assert len(code) == 6
        assert code.isdigit()

    def test_generated_secret_is_unpadded_base32(self):
        secret = totp.generate_secret()
        assert "=" not in secret
        assert len(secret) == 32

    def test_invalid_secret_yields_no_code(self):
        assert totp.code_at_step("not base32 !!", 1) == ""


class TestMatching:
    """Tests for drift window and replay protection."""

    def test_current_step_matches(self):
        code = totp.generate_code(RFC_SECRET, NOW)
        assert totp.match_step(RFC_SECRET, code, timestamp=NOW) == totp.step_for(NOW)

    def test_one_step_drift_accepted(self):
        step = totp.step_for(NOW)
        earlier = totp.code_at_step(RFC_SECRET, step - 1)
        later = totp.code_at_step(RFC_SECRET, step + 1)
        assert totp.match_step(RFC_SECRET, earlier, timestamp=NOW) == step - 1
        assert totp.match_step(RFC_SECRET, later, timestamp=NOW) == step + 1

    def test_two_step_drift_rejected(self):
        step = totp.step_for(NOW)
        assert totp.match_step(RFC_SECRET, totp.code_at_step(RFC_SECRET, step - 2), timestamp=NOW) is None
        assert totp.match_step(RFC_SECRET, totp.code_at_step(RFC_SECRET, step + 2), timestamp=NOW) is None

    def test_used_step_cannot_be_replayed(self):
        step = totp.step_for(NOW)
        code = totp.code_at_step(RFC_SECRET, step)
        assert totp.match_step(RFC_SECRET, code, timestamp=NOW, last_used_step=step) is None

    def test_later_step_allowed_after_use(self):
        step = totp.step_for(NOW)
        code = totp.code_at_step(RFC_SECRET, step + 1)
        assert totp.match_step(RFC_SECRET, code, timestamp=NOW, last_used_step=step) == step + 1

    def test_malformed_codes_rejected(self):
        assert totp.match_step(RFC_SECRET, "12345", timestamp=NOW) is None
        assert totp.match_step(RFC_SECRET, "abcdef", timestamp=NOW) is None
        assert totp.match_step(RFC_SECRET, "", timestamp=NOW) is None

    def test_spaces_are_ignored(self):
        code = totp.generate_code(RFC_SECRET, NOW)
        spaced = f"{code[:3]} {code[3:]}"
        assert totp.match_step(RFC_SECRET, spaced, timestamp=NOW) == totp.step_for(NOW)


class TestProvisioningUri:
    def test_uri_carries_issuer_and_parameters(self):
        uri = totp.provisioning_uri(RFC_SECRET, "alice@example.com", "Warden")
        parsed = urlparse(uri)
        params = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert parsed.path == "/Warden:alice@example.com"
        assert params["secret"] == [RFC_SECRET]
        assert params["issuer"] == ["Warden"]
        assert params["digits"] == ["6"]
        assert params["period"] == ["30"]
