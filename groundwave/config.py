from typing import Any, ClassVar, FrozenSet

from pydantic_settings import BaseSettings, SettingsConfigDict

from groundwave.core.ipasn import parse_asn_set, parse_country_code_set


PRODUCT_NAME = "Groundwave"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./groundwave.db"

    # Database pool (applies to client/server DBs like Postgres; SQLite uses NullPool)
    DB_POOL_PRE_PING: bool = True
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    # Application
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # Environment
    # Used for guardrails. Suggested values: dev|staging|prod.
    ENV: str = "dev"

    # Public pages
    PUBLIC_SITE_TITLE: str = ""

    # First-user bootstrap. Empty disables bootstrap entirely.
    BOOTSTRAP_TOKEN: str = ""

    # WebAuthn relying party (validated at startup, see PasskeyVerifier.from_settings)
    WEBAUTHN_RP_ID: str = ""
    WEBAUTHN_RP_ORIGINS: str = ""  # comma-separated origins
    WEBAUTHN_RP_NAME: str = PRODUCT_NAME
    WEBAUTHN_LOGIN_TIMEOUT_SECONDS: int = 300
    WEBAUTHN_REGISTRATION_TIMEOUT_SECONDS: int = 300

    # Proof of work
    POW_EASY_DIFFICULTY: int = 12
    POW_MEDIUM_DIFFICULTY: int = 20
    POW_HARD_DIFFICULTY: int = 24
    POW_CHALLENGE_TTL_SECONDS: int = 180
    POW_LOW_RISK_ASNS: str = ""  # comma-separated ASN decimals
    POW_HIGH_RISK_ASNS: str = ""
    POW_HIGH_RISK_COUNTRIES: str = ""  # comma-separated ISO-3166 alpha-2
    # Loopback/private/link-local clients never resolve in public ASN data;
    # treat them as low risk (reverse proxies, LAN access, local dev).
    POW_TRUST_LOCAL_NETWORKS: bool = True

    # IP -> ASN dataset. Empty = packaged groundwave/data/ip2asn-combined.tsv
    IPASN_DATA_PATH: str = ""

    # Server-side sessions
    # NOTE: This default is intentionally insecure and must never be used outside dev/test.
    DEFAULT_SESSION_SECRET: ClassVar[str] = "dev-session-secret-change-me"
    SESSION_SECRET: str = DEFAULT_SESSION_SECRET
    SESSION_COOKIE_NAME: str = "groundwave_session"
    SESSION_COOKIE_SECURE: bool = False
    SESSION_LIFETIME_SECONDS: int = 2592000  # 30 days
    SESSION_GC_INTERVAL_SECONDS: int = 3600

    # Rate limiting (in-memory, best-effort; ceremony endpoints only)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_REQUESTS_PER_WINDOW: int = 120

    # Observability
    METRICS_ENABLED: bool = True

    # --- Guardrails ---
    # Fail-fast on obviously insecure secrets outside dev/test.
    _SAFE_ENVS: ClassVar[FrozenSet[str]] = frozenset({"dev", "development", "test", "testing"})
    _UNSAFE_PLACEHOLDERS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "change-me-in-production",
            "change-me",
            "changeme",
            "",
        }
    )

    def model_post_init(self, __context: Any) -> None:
        # Runs on every Settings() instantiation (including module-level `settings = Settings()`).
        self._guardrail_session_secret()
        self._guardrail_risk_sets()

    def _guardrail_session_secret(self) -> None:
        env = (self.ENV or "").strip().lower()
        if env in self._SAFE_ENVS:
            return

        secret = (self.SESSION_SECRET or "").strip()
        if (
            secret == self.DEFAULT_SESSION_SECRET
            or secret.lower() in self._UNSAFE_PLACEHOLDERS
            or "change-me" in secret.lower()
        ):
            raise RuntimeError(
                "Refusing to start with insecure default/placeholder secrets outside dev/test: "
                "SESSION_SECRET. "
                f"Got ENV={self.ENV!r}. "
                "Set a secure value via the SESSION_SECRET environment variable, "
                "or run with ENV=dev/test."
            )

    def _guardrail_risk_sets(self) -> None:
        """Parse the risk sets once so a typo fails at startup, not per request."""
        try:
            parse_asn_set(self.POW_LOW_RISK_ASNS)
            parse_asn_set(self.POW_HIGH_RISK_ASNS)
            parse_country_code_set(self.POW_HIGH_RISK_COUNTRIES)
        except ValueError as exc:
            raise RuntimeError(f"Invalid proof-of-work risk configuration: {exc}") from exc

    @property
    def webauthn_origins(self) -> list[str]:
        return [o.strip() for o in (self.WEBAUTHN_RP_ORIGINS or "").split(",") if o.strip()]

    @property
    def site_title(self) -> str:
        title = (self.PUBLIC_SITE_TITLE or "").strip()
        return title or PRODUCT_NAME


settings = Settings()


def get_settings() -> Settings:
    """Return the global settings instance.

    Provided as a callable for FastAPI Depends() and test mocking convenience.
    """
    return settings
