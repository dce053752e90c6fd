from datetime import timedelta

import pytest

from conftest import MemoryTenantStore
from waba_connect.core.errors import TenantNotFoundError
from waba_connect.schemas.tenant import AccountReviewStatus, PhoneVerificationStatus
from waba_connect.services.tenant_store import enforce_invariants, utcnow


@pytest.fixture
def tenants():
    return MemoryTenantStore({"id": "t1", "user_id": "u1", "name": "Acme Clinic"})


def test_merge_is_one_write_and_keeps_other_fields(tenants):
    account = tenants.merge("t1", {
        "whatsapp_business_account_id": "WABA123",
        "whatsapp_enabled": True,
        "whatsapp_phone_verification_status": PhoneVerificationStatus.PENDING,
    })

    assert len(tenants.writes) == 1
    assert tenants.documents["t1"]["name"] == "Acme Clinic"
    assert tenants.documents["t1"]["whatsapp_phone_verification_status"] == "pending"
    assert account.whatsapp_enabled is True
    assert account.whatsapp_version == 1
    assert account.whatsapp_updated_at is not None


def test_merge_bumps_version(tenants):
    tenants.merge("t1", {"whatsapp_phone_number": "+910000000000"})
    account = tenants.merge("t1", {"whatsapp_phone_number": "+910000000001"})

    assert account.whatsapp_version == 2


def test_enabled_requires_business_account(tenants):
    account = tenants.merge("t1", {"whatsapp_enabled": True})
    assert account.whatsapp_enabled is False


def test_verified_requires_registered_phone(tenants):
    account = tenants.merge("t1", {"whatsapp_verified": True})
    assert account.whatsapp_verified is False


def test_clearing_business_account_drops_enabled(tenants):
    tenants.merge("t1", {"whatsapp_business_account_id": "WABA123", "whatsapp_enabled": True})

    account = tenants.merge("t1", {"whatsapp_business_account_id": None})

    assert account.whatsapp_enabled is False
    assert tenants.writes[-1]["whatsapp_enabled"] is False


def test_enforce_invariants_leaves_valid_document():
    doc = {"whatsapp_enabled": True, "whatsapp_business_account_id": "W", "whatsapp_verified": False}
    assert enforce_invariants(dict(doc)) == doc


def test_unknown_tenant(tenants):
    with pytest.raises(TenantNotFoundError):
        tenants.get("missing")
    with pytest.raises(TenantNotFoundError):
        tenants.merge("missing", {"whatsapp_enabled": False})


def test_get_by_user_and_waba(tenants):
    tenants.merge("t1", {"whatsapp_business_account_id": "WABA123"})

    assert tenants.get_by_user("u1").id == "t1"
    assert tenants.find_by_waba_id("WABA123").id == "t1"
    assert tenants.find_by_waba_id("WABA999") is None


def test_remote_update_after_last_write_applies(tenants):
    tenants.merge("t1", {"whatsapp_business_account_id": "WABA123"})

    account = tenants.apply_remote_update(
        "t1", {"whatsapp_account_review_status": AccountReviewStatus.APPROVED}, utcnow() + timedelta(seconds=5)
    )

    assert account.whatsapp_account_review_status == AccountReviewStatus.APPROVED


def test_remote_update_older_than_last_write_is_skipped(tenants):
    observed_at = utcnow() - timedelta(minutes=5)
    tenants.merge("t1", {"whatsapp_account_review_status": AccountReviewStatus.PENDING})

    assert tenants.apply_remote_update(
        "t1", {"whatsapp_account_review_status": AccountReviewStatus.APPROVED}, observed_at
    ) is None
    assert tenants.get("t1").whatsapp_account_review_status == AccountReviewStatus.PENDING
