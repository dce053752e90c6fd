import logging
from typing import List

from waba_connect.core.config import SandboxAccountConfig
from waba_connect.core.errors import ConfigurationError
from waba_connect.schemas.tenant import (
    AccountReviewStatus,
    CreatedVia,
    PhoneVerificationStatus,
    TenantAccount,
    WhatsAppProvider,
)
from waba_connect.services.tenant_store import TenantStore, utcnow

logger = logging.getLogger(__name__)

MIN_PHONE_NUMBER_ID_LENGTH = 10
MIN_ACCESS_TOKEN_LENGTH = 50


def config_problems(config: SandboxAccountConfig) -> List[str]:
    problems = []
    if not config.waba_id:
        problems.append("Test mode not configured: WABA ID is missing.")
    if len(config.phone_number_id or "") < MIN_PHONE_NUMBER_ID_LENGTH:
        problems.append("Test mode not configured: Phone Number ID is missing.")
    if len(config.temp_access_token or "") < MIN_ACCESS_TOKEN_LENGTH:
        problems.append("Temporary Access Token not configured.")
    return problems


class SandboxSeeder:
    """
    Connects a tenant to the Meta developer test number without going through
    verification. Development and demo use only.
    """

    def __init__(self, config: SandboxAccountConfig, store: TenantStore):
        self.config = config
        self.store = store
        self.problems = config_problems(config)
        if self.problems:
            logger.warning(f"Sandbox account unavailable: {' '.join(self.problems)}")

    @property
    def available(self) -> bool:
        return not self.problems

    def activate(self, tenant_id: str) -> TenantAccount:
        if self.problems:
            raise ConfigurationError(" ".join(self.problems))

        now = utcnow()
        account = self.store.merge(tenant_id, {
            "whatsapp_business_account_id": self.config.waba_id,
            "whatsapp_phone_number_id": self.config.phone_number_id,
            "whatsapp_phone_number": self.config.phone_number,
            "whatsapp_enabled": True,
            "whatsapp_provider": WhatsAppProvider.TECH_PROVIDER,
            "whatsapp_created_via": CreatedVia.TEST_MODE,
            "whatsapp_created_at": now,
            "whatsapp_phone_registered": True,
            "whatsapp_phone_verification_status": PhoneVerificationStatus.VALID,
            "whatsapp_verified": True,
            "whatsapp_account_review_status": AccountReviewStatus.APPROVED,
            "whatsapp_status_last_checked": now,
            "whatsapp_test_mode": True,
            "whatsapp_test_recipient": self.config.test_recipient,
        })
        logger.warning(
            f"Tenant {tenant_id} connected to sandbox WABA {self.config.waba_id}; "
            f"token expires in ~{self.config.token_lifetime_minutes} minutes"
        )
        return account
