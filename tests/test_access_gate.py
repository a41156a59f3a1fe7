"""Tests for the access gate: decide, audit, report."""

from __future__ import annotations

from datetime import datetime, UTC

import pytest

from cura_sec.audit import AccessMetadata, AuditAction, AuditLog, AuditStorageError, InMemoryAuditStorage
from cura_sec.config import PolicyConfiguration, SecurityConfig
from cura_sec.consent.authority import ConsentAuthority
from cura_sec.consent.storage import InMemoryConsentStorage
from cura_sec.consent.store import ConsentStore
from cura_sec.exceptions import AuditWriteError, AuthorizationError, DenialReason, ValidationError
from cura_sec.policy.gate import AccessGate
from cura_sec.utils.clock import FrozenClock


START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class FlakyAuditStorage(InMemoryAuditStorage):
    """Audit storage that can be switched into an outage"""

    def __init__(self):
        super().__init__()
        self.failing = False
        self.attempts = 0

    def insert(self, entry):
        self.attempts += 1
        if self.failing:
            raise AuditStorageError("audit database unavailable")
        return super().insert(entry)


class TestAccessGate:
    """Every enforce call leaves exactly one audit entry."""

    def setup_method(self) -> None:
        self.clock = FrozenClock(START)
        self.config = SecurityConfig(audit_retry_min_wait=0, audit_retry_max_wait=0)
        self.store = ConsentStore(InMemoryConsentStorage(), None, self.clock,
                                  PolicyConfiguration(), self.config)
        self.audit_storage = FlakyAuditStorage()
        self.audit_log = AuditLog(self.audit_storage, self.clock, self.config)
        self.gate = AccessGate(ConsentAuthority(self.store), self.audit_log, self.config)

        self.consent = self.store.grant_direct("patient_a", "provider_p",
                                               ["READ_MEDICAL", "WRITE_NOTES"], "treatment")

    def _enforce(self, actor_id: str = "provider_p", scopes=("READ_MEDICAL",),
                 action: AuditAction = AuditAction.RECORD_READ, **kwargs):
        return self.gate.enforce(
            actor_id=actor_id,
            actor_role=kwargs.pop("actor_role", "doctor"),
            patient_id=kwargs.pop("patient_id", "patient_a"),
            required_scopes=list(scopes),
            action=action,
            resource_type="encounter",
            resource_id="enc_1",
            ip_address="10.0.0.5",
            user_agent="pytest",
        )

    def test_permit_writes_one_entry_and_returns_token(self) -> None:
        token = self._enforce()

        assert token.consent_id == self.consent.id
        assert token.scopes == ["READ_MEDICAL"]
        assert not token.audit_pending
        assert len(self.audit_storage.entries) == 1

        entry = self.audit_storage.entries[0]
        assert entry.id == token.audit_entry_id
        assert entry.action == AuditAction.RECORD_READ
        assert entry.actor_id == "provider_p"
        assert entry.subject_id == "patient_a"
        assert entry.consent_id == self.consent.id
        assert entry.ip_address == "10.0.0.5"
        assert isinstance(entry.metadata, AccessMetadata)
        assert entry.metadata.access_action == "READ"
        assert entry.metadata.decision_path == "consent"

    def test_write_action_maps_to_write(self) -> None:
        token = self._enforce(scopes=("WRITE_NOTES",), action=AuditAction.RECORD_CREATE)

        entry = self.audit_storage.entries[0]
        assert token.action == AuditAction.RECORD_CREATE
        assert entry.metadata.access_action == "WRITE"

    def test_deny_writes_one_entry_and_raises(self) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            self._enforce(actor_id="provider_q")

        assert exc_info.value.reason == DenialReason.NO_ACTIVE_CONSENT
        assert len(self.audit_storage.entries) == 1

        entry = self.audit_storage.entries[0]
        assert entry.action == AuditAction.ACCESS_DENIED
        assert entry.reason == "no_active_consent"
        assert entry.actor_id == "provider_q"
        assert entry.metadata.requested_action == "RECORD_READ"

    def test_insufficient_scope_denial_names_consent(self) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            self._enforce(scopes=("WRITE_PRESCRIPTION",), action=AuditAction.RECORD_UPDATE)

        assert exc_info.value.reason == DenialReason.INSUFFICIENT_SCOPE
        assert exc_info.value.consent_id == self.consent.id
        assert exc_info.value.details["required_scopes"] == ["WRITE_PRESCRIPTION"]
        assert self.audit_storage.entries[0].consent_id == self.consent.id

    def test_every_call_is_audited(self) -> None:
        outcomes = []
        for actor in ("provider_p", "provider_q", "patient_a", "provider_p"):
            try:
                self._enforce(actor_id=actor)
                outcomes.append(True)
            except AuthorizationError:
                outcomes.append(False)

        assert outcomes == [True, False, True, True]
        assert len(self.audit_storage.entries) == 4
        assert [e.action for e in self.audit_storage.entries].count(AuditAction.ACCESS_DENIED) == 1
        assert self.audit_log.verify_integrity()

    def test_admin_override_is_flagged_privileged(self) -> None:
        token = self._enforce(actor_id="admin_1", actor_role="admin", scopes=("READ_LAB",))

        assert token.privileged
        assert token.consent_id == "admin-override"
        assert self.audit_storage.entries[0].metadata.privileged

    def test_non_record_action_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            self._enforce(action=AuditAction.CONSENT_GRANTED)
        assert self.audit_storage.entries == []

    def test_read_fails_open_with_audit_pending(self) -> None:
        self.audit_storage.failing = True

        token = self._enforce()

        assert token.audit_pending
        assert self.audit_storage.attempts == self.config.audit_write_attempts
        assert self.audit_log.pending_count == 1

        self.audit_storage.failing = False
        assert self.audit_log.flush_pending() == 1
        assert self.audit_storage.entries[0].id == token.audit_entry_id
        assert self.audit_log.pending_count == 0

    def test_write_fails_closed(self) -> None:
        self.audit_storage.failing = True

        with pytest.raises(AuditWriteError):
            self._enforce(scopes=("WRITE_NOTES",), action=AuditAction.RECORD_UPDATE)

        assert self.audit_log.pending_count == 0

    def test_write_fails_open_when_configured(self) -> None:
        config = SecurityConfig(audit_retry_min_wait=0, audit_retry_max_wait=0, audit_fail_open_writes=True)
        gate = AccessGate(ConsentAuthority(self.store), self.audit_log, config)
        self.audit_storage.failing = True

        token = gate.enforce("provider_p", "doctor", "patient_a", ["WRITE_NOTES"],
                             AuditAction.RECORD_DELETE, "note", "note_1")

        assert token.audit_pending

    def test_denial_survives_audit_outage(self) -> None:
        self.audit_storage.failing = True

        with pytest.raises(AuthorizationError):
            self._enforce(actor_id="provider_q")

        assert self.audit_log.pending_count == 1

    def test_queued_denial_is_written_once_store_recovers(self) -> None:
        self.audit_storage.failing = True
        with pytest.raises(AuthorizationError):
            self._enforce(actor_id="provider_q")
        assert self.audit_log.pending_count == 1

        self.audit_storage.failing = False
        token = self._enforce()

        assert not token.audit_pending
        assert self.audit_log.pending_count == 0
        actions = [e.action for e in self.audit_storage.entries]
        assert actions == [AuditAction.RECORD_READ, AuditAction.ACCESS_DENIED]
        assert self.audit_storage.entries[1].actor_id == "provider_q"
        assert self.audit_log.verify_integrity()
