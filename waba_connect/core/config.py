from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional, Tuple


class SandboxAccountConfig(BaseModel):
    """
    Canned WhatsApp account used by the test-mode seeder.
    Values come from the Meta developer dashboard (API Setup page).
    """
    waba_id: str = ""
    phone_number_id: str = ""
    phone_number: str = ""
    display_name: str = "Test Number"
    test_recipient: Optional[str] = None
    temp_access_token: str = ""
    token_lifetime_minutes: int = 60


class Settings(BaseSettings):
    app_name: str = "WhatsApp Business Connection Service"
    api_v1_str: str = "/api/v1"

    # Meta API configuration
    meta_app_id: str = ""
    meta_config_id: str = ""  # Embedded Signup configuration id
    meta_api_version: str = "v24.0"
    meta_verify_token: str = "default_verify_token"
    meta_app_secret: Optional[str] = None
    meta_system_user_token: Optional[str] = None
    meta_subscribed_fields: List[str] = [
        "messages",
        "message_status",
        "account_update",
        "account_review_update",
    ]

    # Supabase configuration
    supabase_url: str = "your_supabase_url_here"
    supabase_key: str = "your_supabase_key_here"

    new_relic_license_key: Optional[str] = None

    # Embedded signup
    embedded_signup_base_url: str = "https://business.facebook.com/messaging/whatsapp/onboard/"
    embedded_signup_redirect_uri: str = "http://localhost:8000/api/v1/whatsapp/signup/callback"
    app_origin: str = "http://localhost:5173"
    trusted_message_origins: List[str] = [
        "https://business.facebook.com",
        "https://www.facebook.com",
        "https://facebook.com",
    ]
    popup_width: int = 900
    popup_height: int = 700
    popup_poll_interval_seconds: float = 1.0
    signup_session_ttl_minutes: int = 10

    # Delayed status refreshes after a successful link (seconds)
    status_refresh_delays: Tuple[float, ...] = (1.0, 6.0)
    # Relinking the WABA that is already stored resets the review status to PENDING
    reset_review_on_relink: bool = False

    sandbox: SandboxAccountConfig = SandboxAccountConfig()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore"
    )

    @property
    def meta_graph_base_url(self) -> str:
        return f"https://graph.facebook.com/{self.meta_api_version}"


settings = Settings()
