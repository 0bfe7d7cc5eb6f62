import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

MAX_UPLOAD_BYTES = 5 * 1024 * 1024
CANONICAL_SIZE = 512
MAX_SESSIONS = 1000
SESSION_TTL = 3600.0


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    gate_model: str = "gpt-4o"
    gate_timeout: float = 30.0
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    canonical_size: int = CANONICAL_SIZE
    static_dir: str = "static"
    shopify_domain: str = "your-shop.myshopify.com"
    shopify_variant_id: str = "123456789"
    admin_token: Optional[str] = None
    log_level: str = "INFO"
    max_sessions: int = MAX_SESSIONS
    session_ttl: float = SESSION_TTL

    @property
    def designs_dir(self) -> str:
        return os.path.join(self.static_dir, "designs")

    @property
    def models_dir(self) -> str:
        return os.path.join(self.static_dir, "models")

    @classmethod
    def from_env(cls) -> "Settings":
        """Reads settings from the environment, after loading any .env file."""
        load_dotenv()
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            gate_model=os.getenv("KEYCHAIN_GATE_MODEL", "gpt-4o"),
            gate_timeout=float(os.getenv("KEYCHAIN_GATE_TIMEOUT", "30")),
            max_upload_bytes=int(os.getenv("KEYCHAIN_MAX_UPLOAD_BYTES", str(MAX_UPLOAD_BYTES))),
            canonical_size=int(os.getenv("KEYCHAIN_CANONICAL_SIZE", str(CANONICAL_SIZE))),
            static_dir=os.getenv("KEYCHAIN_STATIC_DIR", "static"),
            shopify_domain=os.getenv("SHOPIFY_DOMAIN", "your-shop.myshopify.com"),
            shopify_variant_id=os.getenv("SHOPIFY_PRODUCT_VARIANT_ID", "123456789"),
            admin_token=os.getenv("KEYCHAIN_ADMIN_TOKEN") or None,
            log_level=os.getenv("KEYCHAIN_LOG_LEVEL", "INFO"),
            max_sessions=int(os.getenv("KEYCHAIN_MAX_SESSIONS", str(MAX_SESSIONS))),
            session_ttl=float(os.getenv("KEYCHAIN_SESSION_TTL", str(SESSION_TTL))),
        )
