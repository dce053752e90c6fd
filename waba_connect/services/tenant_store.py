import enum
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import pytz

from waba_connect.core.errors import TenantNotFoundError
from waba_connect.schemas.tenant import TenantAccount
from waba_connect.schemas.waba import SignupSession

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


def _to_storage(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def enforce_invariants(document: Dict[str, Any]) -> Dict[str, Any]:
    """
    Keeps the account flags consistent:
    - enabled only with a business account id
    - verified only with a registered phone
    """
    if document.get("whatsapp_enabled") and not document.get("whatsapp_business_account_id"):
        logger.warning("Dropping whatsapp_enabled: no business account id on the document")
        document["whatsapp_enabled"] = False
    if document.get("whatsapp_verified") and not document.get("whatsapp_phone_registered"):
        logger.warning("Dropping whatsapp_verified: phone is not registered")
        document["whatsapp_verified"] = False
    return document


class TenantStore:
    """
    Tenant document access with merge semantics.
    Subclasses provide the storage primitives (_load, _find, _save, _insert_session).
    """

    def _load(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _find(self, column: str, value: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _save(self, tenant_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _insert_session(self, row: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def get(self, tenant_id: str) -> TenantAccount:
        document = self._load(tenant_id)
        if document is None:
            raise TenantNotFoundError(tenant_id)
        return TenantAccount.model_validate(document)

    def get_by_user(self, user_id: str) -> TenantAccount:
        document = self._find("user_id", user_id)
        if document is None:
            raise TenantNotFoundError(user_id)
        return TenantAccount.model_validate(document)

    def find_by_waba_id(self, waba_id: str) -> Optional[TenantAccount]:
        document = self._find("whatsapp_business_account_id", waba_id)
        return TenantAccount.model_validate(document) if document else None

    def merge(self, tenant_id: str, fields: Dict[str, Any]) -> TenantAccount:
        """
        Merges `fields` into the tenant document in a single write.
        Fields not named are left as they are.
        """
        current = self._load(tenant_id)
        if current is None:
            raise TenantNotFoundError(tenant_id)

        merged = dict(current)
        merged.update({key: _to_storage(value) for key, value in fields.items()})
        enforce_invariants(merged)

        update = {key: merged[key] for key in fields}
        for key in ("whatsapp_enabled", "whatsapp_verified"):
            if merged.get(key) != current.get(key):
                update[key] = merged[key]
        update["whatsapp_version"] = int(current.get("whatsapp_version") or 0) + 1
        update["whatsapp_updated_at"] = utcnow().isoformat()

        saved = self._save(tenant_id, update)
        logger.info(f"Tenant {tenant_id} updated: {sorted(fields)}")
        return TenantAccount.model_validate(saved)

    def apply_remote_update(
        self, tenant_id: str, fields: Dict[str, Any], observed_at: datetime
    ) -> Optional[TenantAccount]:
        """
        Applies an update that originated outside this service (webhook).
        Skipped when a local write happened after `observed_at`.
        """
        current = self.get(tenant_id)
        if current.whatsapp_updated_at and observed_at < current.whatsapp_updated_at:
            logger.info(
                f"Ignoring remote update for tenant {tenant_id}: observed at {observed_at.isoformat()}, "
                f"last write {current.whatsapp_updated_at.isoformat()}"
            )
            return None
        return self.merge(tenant_id, fields)

    def create_signup_session(self, session: SignupSession) -> SignupSession:
        self._insert_session({
            "id": session.id,
            "tenant_id": session.tenant_id,
            "created_at": session.created_at.isoformat(),
            "expires_at": session.expires_at.isoformat(),
            "type": session.type,
        })
        return session

    def get_signup_session(self, session_id: str) -> Optional[SignupSession]:
        row = self._load_session(session_id)
        return SignupSession.model_validate(row) if row else None


class SupabaseTenantStore(TenantStore):
    """Tenant rows live in the Supabase `tenants` table."""

    def __init__(self, client, table: str = "tenants", sessions_table: str = "whatsapp_signup_sessions"):
        self.client = client
        self.table = table
        self.sessions_table = sessions_table

    def _load(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table(self.table).select("*").eq("id", tenant_id).execute()
        return res.data[0] if res.data else None

    def _find(self, column: str, value: str) -> Optional[Dict[str, Any]]:
        res = self.client.table(self.table).select("*").eq(column, value).limit(1).execute()
        return res.data[0] if res.data else None

    def _save(self, tenant_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        res = self.client.table(self.table).update(fields).eq("id", tenant_id).execute()
        if not res.data:
            raise TenantNotFoundError(tenant_id)
        return res.data[0]

    def _insert_session(self, row: Dict[str, Any]) -> None:
        self.client.table(self.sessions_table).insert(row).execute()

    def _load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table(self.sessions_table).select("*").eq("id", session_id).execute()
        return res.data[0] if res.data else None
