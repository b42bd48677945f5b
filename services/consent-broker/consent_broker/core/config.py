from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path

_env_file = ".env" if Path(".env").exists() else None

class Settings(BaseSettings):
    APP_NAME: str = "consent-broker"
    APP_ENV: str = "dev"
    HOST: str = "0.0.0.0"
    PORT: int = 1411
    LOG_LEVEL: str = "INFO"

    # Empty DATABASE_URL disables consent persistence (degraded mode)
    DATABASE_URL: str = "sqlite:///./consent_sessions.db"
    # Empty REDIS_URL disables Idempotency-Key support
    REDIS_URL: str = ""

    # Client pack issued by the Open Finance directory
    OF_CLIENT_ID: str = "https://rp.sandbox.directory.openfinance.ae/openid_relying_party/1a275fe9-8663-49da-92e7-6529128f1f0f"
    OF_SIGNING_KEY_ID: str = "jyTvBN0VsOrQYd9-RP6X33Bcxq-8XtRr1hu9JA2Dvoo"
    OF_SIGNING_KEY_PATH: str | None = None
    OF_SIGNING_KEY_PEM: str | None = None
    OF_SIGNING_ALGORITHM: str = "PS256"

    OF_REDIRECT_URI: str = "https://docs.openfinance-hackathon.com/starter-kit/callback"
    OF_ISSUER: str = "https://auth1.altareq1.sandbox.apihub.openfinance.ae"
    OF_AUTH_ENDPOINT: str = "https://auth1.altareq1.sandbox.apihub.openfinance.ae/auth"
    OF_PAR_ENDPOINT: str = "https://as1.altareq1.sandbox.apihub.openfinance.ae/par"
    OF_TOKEN_ENDPOINT: str = "https://as1.altareq1.sandbox.apihub.openfinance.ae/token"
    OF_RESOURCE_SERVER: str = "https://rs1.altareq1.sandbox.apihub.openfinance.ae"
    OF_CLIENT_ASSERTION_AUDIENCE: str | None = None
    OF_CLIENT_ASSERTION_TTL_SECONDS: int = 300

    # Transport certificate for mutual TLS with the PAR, token and resource servers
    OF_TRANSPORT_CERT_PATH: str | None = None
    OF_TRANSPORT_KEY_PATH: str | None = None
    OF_TRANSPORT_CA_BUNDLE: str | None = None

    # Provider key used to encrypt PersonalIdentifiableInformation
    OF_ENCRYPTION_KEY_PATH: str | None = None
    OF_ENCRYPTION_KEY_ID: str | None = None
    OF_ENCRYPTION_JWKS_URL: str | None = None
    OF_BASE_CONSENT_ID: str | None = None

    CREDITOR_NAME: str = "Mario International"
    CREDITOR_ACCOUNT_ID: str = "10000109010101"
    CREDITOR_AGENT_ID: str = "10000109010101"
    CREDITOR_COUNTRY: str = "AE"
    CONSENT_CURRENCY: str = "AED"
    CONSENT_DEFAULT_VALIDITY_DAYS: int = 90
    CONSENT_SOURCE: str = "consent-broker"

    HTTP_TIMEOUT_SECONDS: float = 20.0
    RESOURCE_FANOUT_LIMIT: int = 4
    AUTH_CODE_BUFFER_SIZE: int = 50
    TOKEN_CACHE_WRITE_ATTEMPTS: int = 3
    TOKEN_CACHE_RETRY_BACKOFF_SECONDS: float = 0.2

    METRICS_ENABLED: bool = True
    METRICS_EXCLUDE_ROUTES: list[str] = ["/metrics", "/health"]

    model_config = SettingsConfigDict(env_file=_env_file, env_file_encoding="utf-8")

    @property
    def assertion_audience(self) -> str:
        return self.OF_CLIENT_ASSERTION_AUDIENCE or self.OF_TOKEN_ENDPOINT

settings = Settings()
