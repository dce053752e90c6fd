"""
WhatsApp Business Account connection workflow for one tenant.

    start_signup -> (popup) -> handle_message -> link -> [submit_pin] -> refresh_status

Manual entry and the sandbox account enter the same persisted shape directly.
The flow is driven from the event loop; remote procedures are awaited and
follow-up status refreshes run as background tasks.
"""
import asyncio
import logging
import re
from collections import OrderedDict, deque
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, Optional, Set, Tuple, Union

from waba_connect.core.errors import (
    ConfigurationError,
    ConnectionStateError,
    IncorrectPinError,
    ManualEntryError,
    PinFormatError,
    RemoteProcedureError,
    WabaConnectError,
)
from waba_connect.schemas.tenant import (
    DISCONNECTED_FIELDS,
    AccountReviewStatus,
    CreatedVia,
    PhoneVerificationStatus,
    TenantAccount,
    WhatsAppProvider,
)
from waba_connect.schemas.waba import (
    AccountReviewInfo,
    ConnectionStateResponse,
    DetectionResult,
    LinkRequest,
    LinkResponse,
    Notice,
    OverallInfo,
    PendingWabaLink,
    PhoneInfo,
    SignupLaunch,
    StatusResponse,
    WabaInfo,
    WabaStatus,
)
from waba_connect.services.sandbox import SandboxSeeder
from waba_connect.services.signup_messages import (
    SignupCancelled,
    SignupFailed,
    SignupIncomplete,
    SignupMessage,
    SignupSucceeded,
    normalize_message,
)
from waba_connect.services.signup_session import SignupSessionService
from waba_connect.services.tenant_store import TenantStore, utcnow

logger = logging.getLogger(__name__)

LinkProcedure = Callable[[str, LinkRequest], Awaitable[LinkResponse]]
StatusProcedure = Callable[[str], Awaitable[StatusResponse]]
DetectProcedure = Callable[[str], Awaitable[DetectionResult]]

PIN_PATTERN = re.compile(r"[0-9]{6}")
INCORRECT_PIN_MESSAGE = "Incorrect PIN. Make sure you're entering your WhatsApp two-step verification PIN."

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


# --- States ---

@dataclass(frozen=True)
class Idle:
    error: Optional[str] = None
    phase = "idle"


@dataclass(frozen=True)
class Linking:
    link: PendingWabaLink
    phase = "linking"


@dataclass(frozen=True)
class AwaitingPin:
    link: PendingWabaLink
    created_via: CreatedVia = CreatedVia.EMBEDDED_SIGNUP
    pin_error: Optional[str] = None
    phase = "awaiting_pin"


@dataclass(frozen=True)
class Linked:
    waba_id: str
    phase = "linked"


ConnectionState = Union[Idle, Linking, AwaitingPin, Linked]


def sandbox_status(account: TenantAccount) -> WabaStatus:
    """Fixed "fully approved" status reported for test-mode accounts."""
    return WabaStatus(
        waba=WabaInfo(id=account.whatsapp_business_account_id, is_enabled=True),
        account_review=AccountReviewInfo(status=AccountReviewStatus.APPROVED, is_approved=True),
        phone=PhoneInfo(
            phone_number_id=account.whatsapp_phone_number_id,
            phone_number=account.whatsapp_phone_number,
            verified=True,
            registered=True,
            verification_status=PhoneVerificationStatus.VALID,
        ),
        overall=OverallInfo(ready=True, needs_action=False, pending_actions=[]),
    )


def mirror_fields(status: WabaStatus) -> Dict[str, Any]:
    """
    Tenant fields taken from a status answer. Values the answer leaves out are
    not included, so the stored ones stay as they are.
    """
    fields: Dict[str, Any] = {"whatsapp_status_last_checked": utcnow()}
    phone = status.phone
    if phone.phone_number_id:
        fields["whatsapp_phone_number_id"] = phone.phone_number_id
        fields["whatsapp_phone_registered"] = phone.registered
    if phone.phone_number:
        fields["whatsapp_phone_number"] = phone.phone_number
    # Verified follows the verification status; an unknown status says nothing about it
    if phone.verification_status is not None:
        fields["whatsapp_phone_verification_status"] = phone.verification_status
        fields["whatsapp_verified"] = phone.verified
    if status.account_review.status is not None:
        fields["whatsapp_account_review_status"] = status.account_review.status
    return fields


class WabaConnectionFlow:
    def __init__(
        self,
        tenant_id: str,
        store: TenantStore,
        link_procedure: LinkProcedure,
        status_procedure: StatusProcedure,
        detect_procedure: Optional[DetectProcedure] = None,
        sessions: Optional[SignupSessionService] = None,
        sandbox: Optional[SandboxSeeder] = None,
        trusted_origins: Iterable[str] = (),
        refresh_delays: Tuple[float, ...] = (1.0, 6.0),
        poll_interval: float = 1.0,
        reset_review_on_relink: bool = False,
    ):
        self.tenant_id = tenant_id
        self.store = store
        self.link_procedure = link_procedure
        self.status_procedure = status_procedure
        self.detect_procedure = detect_procedure
        self.sessions = sessions
        self.sandbox = sandbox
        self.trusted_origins = tuple(trusted_origins)
        self.refresh_delays = tuple(refresh_delays)
        self.poll_interval = poll_interval
        self.reset_review_on_relink = reset_review_on_relink

        self.state: ConnectionState = Idle()
        self.account: Optional[TenantAccount] = None
        self.last_status: Optional[WabaStatus] = None
        self.notices: Deque[Notice] = deque(maxlen=50)
        self._result_delivered = False
        self._tasks: Set[asyncio.Task] = set()

    # --- Operator notices ---

    def notify(self, level: str, message: str) -> None:
        logger.log(_LOG_LEVELS.get(level, logging.INFO), f"[tenant {self.tenant_id}] {message}")
        self.notices.append(Notice(level=level, message=message, created_at=utcnow()))

    def snapshot(self) -> ConnectionStateResponse:
        state = self.state
        return ConnectionStateResponse(
            phase=state.phase,
            pending_link=state.link if isinstance(state, AwaitingPin) else None,
            pin_error=state.pin_error if isinstance(state, AwaitingPin) else None,
            error=state.error if isinstance(state, Idle) else None,
            account=self.account,
            status=self.last_status,
            notices=list(self.notices),
            test_mode_available=self.sandbox is not None and self.sandbox.available,
        )

    # --- Session initiator ---

    def start_signup(self) -> SignupLaunch:
        if self.sessions is None:
            raise ConnectionStateError("Embedded signup is not configured")
        launch = self.sessions.start(self.tenant_id)
        self._result_delivered = False
        self.state = Idle()
        return launch

    async def watch_popup(self, is_closed: Callable[[], bool]) -> ConnectionState:
        """Polls until the popup is gone, then falls back to detection if nothing arrived."""
        while not is_closed():
            await asyncio.sleep(self.poll_interval)
        return await self.on_popup_closed()

    async def on_popup_closed(self) -> ConnectionState:
        if self._result_delivered:
            return self.state
        logger.info(f"Signup popup closed for tenant {self.tenant_id} without a result, checking for account")
        return await self.detect_account()

    # --- Message listener ---

    async def handle_message(self, origin: str, data: Any) -> Optional[SignupMessage]:
        message = normalize_message(origin, data, self.trusted_origins)
        if message is None:
            return None

        self._result_delivered = True
        if isinstance(message, SignupSucceeded):
            await self.link(message.link)
        elif isinstance(message, SignupFailed):
            self.state = Idle(error=message.error)
            self.notify("error", f"WhatsApp signup failed: {message.error}")
        elif isinstance(message, SignupCancelled):
            self.state = Idle()
            self.notify("info", "WhatsApp setup cancelled")
        elif isinstance(message, SignupIncomplete):
            await self.detect_account()
        return message

    # --- Account linker ---

    async def link(self, link: PendingWabaLink, created_via: CreatedVia = CreatedVia.EMBEDDED_SIGNUP) -> ConnectionState:
        # A second attempt simply replaces whatever was held before
        self.state = Linking(link)
        request = LinkRequest(
            waba_id=link.waba_id,
            phone_number_id=link.phone_number_id,
            phone_number=link.phone_number,
            embedded_data=link.embedded_data if link.embedded_data is not None else (dict(link.raw_payload) or None),
        )

        try:
            result = await self.link_procedure(self.tenant_id, request)
        except RemoteProcedureError as e:
            self.state = Idle(error=str(e))
            self.notify("warning", "Could not confirm the WhatsApp connection. Checking current status...")
            await self.refresh_status()
            return self.state

        if result.require_pin:
            held = link.model_copy(update={
                "waba_id": result.waba_id or link.waba_id,
                "phone_number_id": result.phone_number_id or link.phone_number_id,
                "phone_number": result.phone_number or link.phone_number,
            })
            self.state = AwaitingPin(link=held, created_via=created_via)
            self.notify("info", "Please enter your 6-digit PIN to register your phone number.")
            return self.state

        if not result.success:
            self.state = Idle(error=result.message or "Linking did not complete")
            self.notify("info", "Setup incomplete. Complete the signup in the popup window, then check for your account.")
            return self.state

        self._persist_link(result, link, created_via, pin_verified=False)
        self.notify("success", "WhatsApp Business Account connected successfully!")
        self._schedule_refreshes()
        return self.state

    def _persist_link(
        self, result: LinkResponse, link: PendingWabaLink, created_via: CreatedVia, pin_verified: bool
    ) -> TenantAccount:
        current = self.store.get(self.tenant_id)
        waba_id = result.waba_id or link.waba_id
        phone_number_id = result.phone_number_id or link.phone_number_id
        phone_number = result.phone_number or link.phone_number
        relink = current.whatsapp_business_account_id == waba_id and not self.reset_review_on_relink

        fields: Dict[str, Any] = {
            "whatsapp_business_account_id": waba_id,
            "whatsapp_phone_number_id": phone_number_id,
            "whatsapp_phone_number": phone_number,
            "whatsapp_provider": WhatsAppProvider.TECH_PROVIDER,
            "whatsapp_created_via": created_via,
            "whatsapp_enabled": True,
            "whatsapp_test_mode": False,
            "whatsapp_test_recipient": None,
            "embedded_signup_data": link.embedded_data or link.raw_payload or None,
        }
        if not relink or current.whatsapp_account_review_status is None:
            fields["whatsapp_account_review_status"] = AccountReviewStatus.PENDING
        if not relink:
            fields["whatsapp_created_at"] = utcnow()
            fields["whatsapp_verified"] = False

        if pin_verified:
            fields["whatsapp_phone_registered"] = True
            fields["whatsapp_phone_verification_status"] = PhoneVerificationStatus.VALID
        elif not (
            relink
            and current.whatsapp_phone_number_id == phone_number_id
            and current.whatsapp_phone_verification_status is not None
        ):
            has_phone = bool(phone_number_id or phone_number)
            fields["whatsapp_phone_registered"] = result.registration_success
            fields["whatsapp_phone_verification_status"] = (
                PhoneVerificationStatus.PENDING if has_phone else PhoneVerificationStatus.NOT_REGISTERED
            )

        self.account = self.store.merge(self.tenant_id, fields)
        self.state = Linked(waba_id=waba_id)
        return self.account

    # --- PIN challenge ---

    async def submit_pin(self, pin: str) -> ConnectionState:
        state = self.state
        if not isinstance(state, AwaitingPin):
            raise ConnectionStateError("No account is waiting for a PIN")

        pin = (pin or "").strip()
        if not PIN_PATTERN.fullmatch(pin):
            raise PinFormatError("Please enter a valid 6-digit PIN")

        held = state.link
        request = LinkRequest(
            waba_id=held.waba_id,
            phone_number_id=held.phone_number_id,
            phone_number=held.phone_number,
            pin=pin,
            embedded_data=held.embedded_data,
        )
        try:
            result = await self.link_procedure(self.tenant_id, request)
        except RemoteProcedureError:
            self.state = replace(state, pin_error="Failed to register. Please try again.")
            self.notify("warning", "Failed to register phone. Please try again.")
            await self.refresh_status()
            return self.state

        if result.require_pin:
            self.state = replace(state, pin_error=INCORRECT_PIN_MESSAGE)
            self.notify("error", "Incorrect PIN. Please try again.")
            raise IncorrectPinError(INCORRECT_PIN_MESSAGE)

        if not result.success:
            self.state = replace(state, pin_error=result.message or "Registration did not complete")
            return self.state

        self._persist_link(result, held, state.created_via, pin_verified=True)
        self.notify("success", "Phone registered successfully! Your WhatsApp is ready.")
        self._schedule_refreshes(self.refresh_delays[:1])
        return self.state

    def cancel_pin(self) -> ConnectionState:
        if isinstance(self.state, AwaitingPin):
            logger.info(f"PIN challenge dismissed for tenant {self.tenant_id}")
            self.state = Idle()
        return self.state

    # --- Status poller ---

    async def refresh_status(self) -> Optional[WabaStatus]:
        account = self.store.get(self.tenant_id)
        self.account = account
        if not account.whatsapp_business_account_id:
            self.last_status = None
            return None

        if account.is_test_mode:
            self.last_status = sandbox_status(account)
            return self.last_status

        try:
            response = await self.status_procedure(self.tenant_id)
        except RemoteProcedureError as e:
            logger.warning(f"Status refresh failed for tenant {self.tenant_id}: {e}")
            return None

        if not response.success or response.status is None:
            return None

        # The account may have been disconnected or replaced while we waited
        latest = self.store.get(self.tenant_id)
        if latest.whatsapp_business_account_id != account.whatsapp_business_account_id:
            logger.info(f"Discarding status for WABA {account.whatsapp_business_account_id}: account changed")
            self.account = latest
            return None

        self.last_status = response.status
        self.account = self.store.merge(self.tenant_id, mirror_fields(response.status))
        return self.last_status

    def _schedule_refreshes(self, delays: Optional[Tuple[float, ...]] = None) -> None:
        for delay in self.refresh_delays if delays is None else delays:
            task = asyncio.create_task(self._delayed_refresh(delay))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _delayed_refresh(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.refresh_status()
        except WabaConnectError as e:
            logger.warning(f"Scheduled status refresh failed for tenant {self.tenant_id}: {e}")

    async def settle(self) -> None:
        """Waits for every scheduled refresh to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    # --- Manual fallback, detection, sandbox ---

    async def link_manual(
        self, waba_id: str, phone_number_id: Optional[str] = None, phone_number: Optional[str] = None
    ) -> ConnectionState:
        waba_id = (waba_id or "").strip()
        if not waba_id:
            raise ManualEntryError("WABA ID is required")
        link = PendingWabaLink(
            waba_id=waba_id,
            phone_number_id=(phone_number_id or "").strip() or None,
            phone_number=(phone_number or "").strip() or None,
            embedded_data={"manual_entry": True},
        )
        return await self.link(link, CreatedVia.MANUAL_ENTRY)

    async def detect_account(self) -> ConnectionState:
        if self.detect_procedure is None:
            self.notify("info", "Automatic account detection is not available. Enter your account details manually.")
            return self.state

        try:
            result = await self.detect_procedure(self.tenant_id)
        except RemoteProcedureError as e:
            self.state = Idle(error=str(e))
            self.notify("error", "Failed to check for account.")
            return self.state

        if not result.found or not result.waba_id:
            self.notify("info", "No new account found. Make sure you completed the setup in the popup.")
            return self.state

        link = PendingWabaLink(
            waba_id=result.waba_id,
            phone_number_id=result.phone_number_id,
            phone_number=result.phone_number,
            embedded_data={"detected": True},
        )
        return await self.link(link)

    def activate_test_mode(self) -> TenantAccount:
        if self.sandbox is None:
            raise ConfigurationError("Test mode is not available")
        try:
            account = self.sandbox.activate(self.tenant_id)
        except ConfigurationError as e:
            self.notify("error", str(e))
            raise

        self._cancel_refreshes()
        self.account = account
        self.last_status = sandbox_status(account)
        self.state = Linked(waba_id=account.whatsapp_business_account_id)
        self.notify("success", "Test account connected!")
        self.notify(
            "warning",
            "Test mode is for development and demos only. "
            f"The access token expires in ~{self.sandbox.config.token_lifetime_minutes} minutes.",
        )
        return account

    # --- Disconnect ---

    def disconnect(self) -> TenantAccount:
        self._cancel_refreshes()
        self.account = self.store.merge(self.tenant_id, DISCONNECTED_FIELDS)
        self.state = Idle()
        self.last_status = None
        self.notify("success", "WhatsApp disconnected.")
        return self.account

    @property
    def has_pending_refreshes(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def _cancel_refreshes(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    # --- Remote-origin document changes ---

    def receive_snapshot(self, snapshot: TenantAccount) -> bool:
        """
        Applies a tenant document observed from outside this flow. Snapshots older
        than the last write seen here are dropped.
        """
        local = self.account
        if local is not None and snapshot.whatsapp_version < local.whatsapp_version:
            logger.debug(
                f"Dropping stale snapshot v{snapshot.whatsapp_version} (local v{local.whatsapp_version})"
            )
            return False

        waba_changed = local is None or local.whatsapp_business_account_id != snapshot.whatsapp_business_account_id
        self.account = snapshot
        if waba_changed and snapshot.is_connected and not isinstance(self.state, (Linking, AwaitingPin)):
            self.state = Linked(waba_id=snapshot.whatsapp_business_account_id)
            if not snapshot.is_test_mode:
                self._schedule_refreshes(self.refresh_delays[:1])
        return True


class ConnectionRegistry:
    """
    One flow per tenant, created on first use. At most `max_flows` are kept;
    the least recently used flow without pending refreshes is dropped first.
    A dropped flow is rebuilt from the tenant document on the next request.
    """

    def __init__(self, factory: Callable[[str], WabaConnectionFlow], max_flows: int = 1000):
        self.factory = factory
        self.max_flows = max_flows
        self._flows: "OrderedDict[str, WabaConnectionFlow]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._flows)

    def get(self, tenant_id: str) -> WabaConnectionFlow:
        flow = self._flows.get(tenant_id)
        if flow is None:
            flow = self._flows[tenant_id] = self.factory(tenant_id)
            self._evict(keep=tenant_id)
        self._flows.move_to_end(tenant_id)
        return flow

    def _evict(self, keep: str) -> None:
        for tenant_id in list(self._flows):
            if len(self._flows) <= self.max_flows:
                return
            if tenant_id != keep and not self._flows[tenant_id].has_pending_refreshes:
                del self._flows[tenant_id]
                logger.debug(f"Dropped connection flow for tenant {tenant_id}")

    async def aclose(self) -> None:
        for flow in self._flows.values():
            await flow.aclose()
        self._flows.clear()
