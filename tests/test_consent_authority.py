"""Tests for the consent authority decision function."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, UTC

import pytest

from cura_sec.config import PolicyConfiguration, SecurityConfig
from cura_sec.consent.authority import ConsentAuthority, DecisionPath, scope_satisfied
from cura_sec.consent.models import AccessAction, Consent, ConsentScope, ConsentStatus
from cura_sec.consent.storage import InMemoryConsentStorage
from cura_sec.consent.store import ConsentStore
from cura_sec.exceptions import DenialReason, InvalidScopeError
from cura_sec.policy.identity import InMemoryIdentityResolver
from cura_sec.utils.clock import FrozenClock


START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class TestConsentAuthority:
    """Decision outcomes for providers, patients and admins."""

    def setup_method(self) -> None:
        self.clock = FrozenClock(START)
        self.resolver = InMemoryIdentityResolver()
        self.resolver.register("patient_a", "patient")
        self.resolver.register("provider_p", "doctor")
        self.resolver.register("admin_1", "admin")
        self.storage = InMemoryConsentStorage()
        self.store = ConsentStore(self.storage, self.resolver, self.clock,
                                  PolicyConfiguration(), SecurityConfig())
        self.authority = ConsentAuthority(self.store)

    def _approved_consent(self, scope=("READ_BASIC",)) -> Consent:
        request = self.store.create_request("patient_a", "provider_p", list(scope), "checkup")
        return self.store.approve_request(request.id, "patient_a")

    def test_request_approve_then_permit(self) -> None:
        consent = self._approved_consent()

        decision = self.authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ)

        assert decision.permit
        assert decision.consent_id == consent.id
        assert decision.path == DecisionPath.CONSENT
        assert not decision.privileged

    def test_no_consent_denies(self) -> None:
        decision = self.authority.decide("provider_p", "patient_a", ["READ_MEDICAL"], AccessAction.READ)

        assert not decision.permit
        assert decision.reason == DenialReason.NO_ACTIVE_CONSENT
        assert decision.consent_id is None

    def test_unknown_patient_looks_like_no_consent(self) -> None:
        decision = self.authority.decide("provider_p", "nobody", ["READ_BASIC"], AccessAction.READ)
        assert decision.reason == DenialReason.NO_ACTIVE_CONSENT

    def test_insufficient_scope_carries_consent_id(self) -> None:
        consent = self._approved_consent()

        decision = self.authority.decide("provider_p", "patient_a", ["WRITE_NOTES"], AccessAction.WRITE)

        assert not decision.permit
        assert decision.reason == DenialReason.INSUFFICIENT_SCOPE
        assert decision.consent_id == consent.id

    def test_revocation_denies_immediately(self) -> None:
        consent = self._approved_consent()
        self.store.revoke(consent.id, "patient_a")

        decision = self.authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ)

        assert not decision.permit
        assert decision.reason == DenialReason.NO_ACTIVE_CONSENT

    def test_revoked_consent_with_future_revoked_at_never_permits(self) -> None:
        consent = self._approved_consent()
        self.store.revoke(consent.id, "patient_a")
        self.storage.consents[consent.id] = self.storage.consents[consent.id].model_copy(
            update={"revoked_at": START + timedelta(days=365)}
        )

        decision = self.authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ)
        assert not decision.permit

    @pytest.mark.parametrize("action", [AccessAction.READ, AccessAction.WRITE])
    def test_self_access_always_permits(self, action: AccessAction) -> None:
        decision = self.authority.decide("patient_a", "patient_a",
                                         ["WRITE_PRESCRIPTION", "READ_RADIOLOGY"], action)

        assert decision.permit
        assert decision.consent_id == "self"
        assert decision.path == DecisionPath.SELF

    def test_expired_consent_never_permits(self) -> None:
        self.store.grant_direct("patient_a", "provider_p", ["READ_BASIC"], "checkup",
                                expires_at=START + timedelta(hours=1))
        self.clock.advance(hours=2)

        decision = self.authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ)

        assert not decision.permit
        assert decision.reason == DenialReason.NO_ACTIVE_CONSENT
        # Stored status was never flipped
        assert self.store.list_consents("patient_a")[0].status == ConsentStatus.ACTIVE

    def test_read_basic_satisfies_any_read(self) -> None:
        consent = self._approved_consent()

        decision = self.authority.decide("provider_p", "patient_a",
                                         ["READ_MEDICAL", "READ_LAB"], AccessAction.READ)

        assert decision.permit
        assert decision.consent_id == consent.id
        assert decision.path == DecisionPath.READ_BASIC_FALLBACK

    def test_read_basic_does_not_cover_writes(self) -> None:
        self._approved_consent()

        decision = self.authority.decide("provider_p", "patient_a", ["READ_MEDICAL"], AccessAction.WRITE)
        assert decision.reason == DenialReason.INSUFFICIENT_SCOPE

    def test_read_basic_fallback_can_be_switched_off(self) -> None:
        self._approved_consent()
        strict = ConsentAuthority(self.store, PolicyConfiguration(read_basic_satisfies_any_read=False))

        decision = strict.decide("provider_p", "patient_a", ["READ_MEDICAL"], AccessAction.READ)
        assert decision.reason == DenialReason.INSUFFICIENT_SCOPE

    def test_admin_role_overrides(self) -> None:
        decision = self.authority.decide("admin_1", "patient_a", ["WRITE_NOTES"], AccessAction.WRITE)

        assert decision.permit
        assert decision.consent_id == "admin-override"
        assert decision.privileged

    def test_explicit_admin_role_overrides_unregistered_actor(self) -> None:
        decision = self.authority.decide("ops_9", "patient_a", ["READ_LAB"], AccessAction.READ,
                                         actor_role="admin")
        assert decision.path == DecisionPath.ADMIN_OVERRIDE

    def test_suspended_actor_is_denied(self) -> None:
        self._approved_consent()
        self.resolver.suspend("provider_p")

        decision = self.authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ)

        assert not decision.permit
        assert decision.reason == DenialReason.NOT_FOUND

    def test_suspended_admin_loses_override(self) -> None:
        self.resolver.suspend("admin_1")

        decision = self.authority.decide("admin_1", "patient_a", ["READ_MEDICAL"], AccessAction.READ)

        assert not decision.permit
        assert not decision.privileged
        assert decision.reason == DenialReason.NOT_FOUND

    def test_provider_override_is_off_by_default(self) -> None:
        decision = self.authority.decide("provider_p", "patient_a", ["WRITE_NOTES"], AccessAction.WRITE)
        assert decision.reason == DenialReason.NO_ACTIVE_CONSENT

    def test_development_policy_provider_override(self) -> None:
        permissive = ConsentAuthority(self.store, PolicyConfiguration.development())

        allowed = permissive.decide("provider_p", "patient_a", ["WRITE_NOTES"], AccessAction.WRITE)
        assert allowed.permit
        assert allowed.path == DecisionPath.PROVIDER_OVERRIDE
        assert allowed.privileged

        outside = permissive.decide("provider_p", "patient_a", ["READ_LAB"], AccessAction.READ)
        assert outside.reason == DenialReason.NO_ACTIVE_CONSENT

    def test_override_needs_both_roles_and_scopes(self) -> None:
        half = ConsentAuthority(self.store, PolicyConfiguration(provider_override_roles=frozenset({"doctor"})))

        decision = half.decide("provider_p", "patient_a", ["WRITE_NOTES"], AccessAction.WRITE)
        assert not decision.permit

    def test_multiple_active_consents_newest_wins(self) -> None:
        older = Consent(patient_id="patient_a", provider_id="provider_p",
                        scope=frozenset({ConsentScope.READ_LAB}), purpose="legacy",
                        created_at=START - timedelta(days=2))
        newer = Consent(patient_id="patient_a", provider_id="provider_p",
                        scope=frozenset({ConsentScope.WRITE_NOTES}), purpose="legacy",
                        created_at=START - timedelta(days=1))
        # Rows that predate the uniqueness rule
        self.storage.consents[older.id] = older
        self.storage.consents[newer.id] = newer

        decision = self.authority.decide("provider_p", "patient_a", ["WRITE_NOTES"], AccessAction.WRITE)
        assert decision.consent_id == newer.id

        denied = self.authority.decide("provider_p", "patient_a", ["READ_LAB"], AccessAction.WRITE)
        assert denied.reason == DenialReason.INSUFFICIENT_SCOPE
        assert denied.consent_id == newer.id

    def test_permit_records_access(self) -> None:
        consent = self._approved_consent()

        self.authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ)
        self.authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ)

        assert self.store.get_consent(consent.id).access_count == 2

    def test_denial_does_not_record_access(self) -> None:
        consent = self._approved_consent()
        self.authority.decide("provider_p", "patient_a", ["WRITE_NOTES"], AccessAction.WRITE)
        assert self.store.get_consent(consent.id).access_count == 0

    def test_access_recording_through_executor(self) -> None:
        consent = self._approved_consent()

        with ThreadPoolExecutor(max_workers=2) as executor:
            authority = ConsentAuthority(self.store, executor=executor)
            for _ in range(5):
                assert authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ).permit

        assert self.store.get_consent(consent.id).access_count == 5

    def test_access_recording_failure_does_not_change_decision(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self._approved_consent()

        def broken(consent_id: str) -> bool:
            raise RuntimeError("counter unavailable")

        monkeypatch.setattr(self.store, "increment_access", broken)

        decision = self.authority.decide("provider_p", "patient_a", ["READ_BASIC"], AccessAction.READ)
        assert decision.permit

    def test_unknown_scope_is_rejected(self) -> None:
        with pytest.raises(InvalidScopeError):
            self.authority.decide("provider_p", "patient_a", ["READ_ALL"], AccessAction.READ)


class TestScopeSatisfied:
    """The scope rule in isolation."""

    def setup_method(self) -> None:
        self.policy = PolicyConfiguration()

    def _consent(self, *scopes: ConsentScope) -> Consent:
        return Consent(patient_id="patient_a", provider_id="provider_p", scope=frozenset(scopes),
                       purpose="care", created_at=START)

    def test_strict_subset(self) -> None:
        consent = self._consent(ConsentScope.READ_MEDICAL, ConsentScope.WRITE_NOTES)
        required = frozenset({ConsentScope.WRITE_NOTES})
        assert scope_satisfied(consent, required, AccessAction.WRITE, self.policy) == DecisionPath.CONSENT

    def test_mixed_read_write_requirement_is_not_covered_by_read_basic(self) -> None:
        consent = self._consent(ConsentScope.READ_BASIC)
        required = frozenset({ConsentScope.READ_MEDICAL, ConsentScope.WRITE_NOTES})
        assert scope_satisfied(consent, required, AccessAction.READ, self.policy) is None
