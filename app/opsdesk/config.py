import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    platform_password: str
    auth_cookie_name: str

    mail_host: str
    mail_port: int
    mail_username: str
    mail_password: str
    mail_from: str
    mail_use_tls: bool
    verification_notify_email: str
    verification_sweep_seconds: int
    verification_sweep_enabled: bool

    phone_lookup_online: bool
    phone_lookup_cache_ttl: int
    chahaoba_token: str

    sms_send_api_url: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _getflag(name: str, default: str = "1") -> bool:
    return _getenv(name, default).lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///opsdesk.db"),
        platform_password=_getenv("PLATFORM_PASSWORD", "admin123"),
        auth_cookie_name=_getenv("AUTH_COOKIE_NAME", "platform-auth"),
        mail_host=_getenv("MAIL_HOST", ""),
        mail_port=_getint("MAIL_PORT", 587),
        mail_username=_getenv("MAIL_USERNAME", ""),
        mail_password=_getenv("MAIL_PASSWORD", ""),
        mail_from=_getenv("MAIL_FROM", "") or _getenv("MAIL_USERNAME", ""),
        mail_use_tls=_getflag("MAIL_USE_TLS", "1"),
        verification_notify_email=_getenv("VERIFICATION_NOTIFY_EMAIL", ""),
        verification_sweep_seconds=_getint("VERIFICATION_SWEEP_SECONDS", 300),
        verification_sweep_enabled=_getflag("VERIFICATION_SWEEP_ENABLED", "1"),
        phone_lookup_online=_getflag("PHONE_LOOKUP_ONLINE", "1"),
        phone_lookup_cache_ttl=_getint("PHONE_LOOKUP_CACHE_TTL", 3600),
        chahaoba_token=_getenv("CHAHAOBA_TOKEN", ""),
        sms_send_api_url=_getenv("SMS_SEND_API_URL", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "PLATFORM_PASSWORD": s.platform_password,
        "AUTH_COOKIE_NAME": s.auth_cookie_name,
        "AUTH_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "MAIL_HOST": s.mail_host,
        "MAIL_PORT": s.mail_port,
        "MAIL_USERNAME": s.mail_username,
        "MAIL_PASSWORD": s.mail_password,
        "MAIL_FROM": s.mail_from,
        "MAIL_USE_TLS": s.mail_use_tls,
        "VERIFICATION_NOTIFY_EMAIL": s.verification_notify_email,
        "VERIFICATION_SWEEP_SECONDS": s.verification_sweep_seconds,
        "VERIFICATION_SWEEP_ENABLED": s.verification_sweep_enabled,
        "PHONE_LOOKUP_ONLINE": s.phone_lookup_online,
        "PHONE_LOOKUP_CACHE_TTL": s.phone_lookup_cache_ttl,
        "CHAHAOBA_TOKEN": s.chahaoba_token,
        "SMS_SEND_API_URL": s.sms_send_api_url,
        # file upload limits (10MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
