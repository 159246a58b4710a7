"""Environment settings and log redaction."""

import logging

import pytest

from chainvault.settings import CatchUpPolicy, SecretMaskingFilter, Settings

KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def _record(msg, *args) -> logging.LogRecord:
    return logging.LogRecord("chainvault.test", logging.INFO, __file__, 1, msg, args, None)


class TestSecretMaskingFilter:

    def test_bare_key_redacted(self):
        record = _record(f"loaded key {KEY}")
        SecretMaskingFilter().filter(record)
        assert record.getMessage() == "loaded key [REDACTED]"

    def test_configured_key_redacted_with_prefix(self):
        record = _record("signing with %s", "0x" + KEY.upper())
        SecretMaskingFilter(("0x" + KEY,)).filter(record)
        assert KEY not in record.getMessage().lower()
        assert "[REDACTED]" in record.getMessage()

    def test_refs_and_tx_hashes_pass_through(self):
        tx_hash = "0x" + "ab" * 32
        record = _record("Paid ref=%s tx=%s", "0x" + "cd" * 32, tx_hash)
        SecretMaskingFilter((KEY,)).filter(record)
        assert record.getMessage() == f"Paid ref=0x{'cd' * 32} tx={tx_hash}"


class TestSettingsFromEnv:

    def test_defaults(self, monkeypatch):
        for name in ("CHAIN", "CUSTODIAN_KEYS", "CATCH_UP_POLICY", "ENFORCE_SINGLE_ACTIVE_LOAN"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.chain == "sepolia"
        assert settings.custodian_keys == ()
        assert settings.catch_up_policy is CatchUpPolicy.SKIP
        assert settings.enforce_single_active_loan

    def test_keys_and_policy(self, monkeypatch):
        monkeypatch.setenv("CUSTODIAN_KEYS", f" {KEY} , ,0x{KEY}")
        monkeypatch.setenv("CATCH_UP_POLICY", "Sequential")
        monkeypatch.setenv("ENFORCE_SINGLE_ACTIVE_LOAN", "no")
        settings = Settings.from_env()
        assert settings.custodian_keys == (KEY, "0x" + KEY)
        assert settings.catch_up_policy is CatchUpPolicy.SEQUENTIAL
        assert not settings.enforce_single_active_loan

    def test_unknown_policy_rejected(self, monkeypatch):
        monkeypatch.setenv("CATCH_UP_POLICY", "burst")
        with pytest.raises(ValueError):
            Settings.from_env()
