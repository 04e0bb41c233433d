import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional


SMTP_CATEGORIES = ("ORDER", "CONTACT", "LOW_STOCK")

# key -> purpose; none are hard requirements for boot, all are for a real deployment
DEPLOY_CHECKS = {
    "DIGIPAY_SITE_ID": "Required for credit card checkout",
    "DIGIPAY_ENCRYPTION_KEY": "Required for credit card checkout",
    "DIGIPAY_POSTBACK_URL": "Required for credit card checkout",
    "DIGIPAY_TCOMPLETE_BASE": "Required for credit card checkout",
    "CATALOG_SERVICE_URL": "Required for products, promo codes and clients",
    "SMTP_HOST": "Required for contact form and order emails",
}


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: str
    password: str
    from_address: str
    secure: bool
    reply_to: Optional[str] = None
    bcc: Optional[str] = None

    @classmethod
    def resolve(cls, category: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Optional["SmtpConfig"]:
        """Resolve SMTP settings for one notification category.

        ``<CATEGORY>_SMTP_*`` and ``<CATEGORY>_FROM`` win over the generic
        ``SMTP_*`` keys. Returns None when any required value is missing, which
        callers report as a skipped send.
        """
        env = os.environ if environ is None else environ
        prefix = f"{category.upper()}_" if category else ""

        def pick(key: str) -> Optional[str]:
            value = env.get(f"{prefix}{key}") if prefix else None
            if value is None or value == "":
                value = env.get(key)
            return value or None

        host = pick("SMTP_HOST")
        port_raw = pick("SMTP_PORT")
        user = pick("SMTP_USER")
        password = pick("SMTP_PASS")
        from_address = env.get(f"{prefix}FROM") if prefix else None
        from_address = from_address or env.get("SMTP_FROM")
        try:
            port = int(port_raw) if port_raw else None
        except ValueError:
            port = None
        if not host or not port or not user or not password or not from_address:
            return None
        secure_raw = env.get(f"{prefix}SMTP_SECURE") if prefix else None
        if secure_raw is None:
            secure_raw = env.get("SMTP_SECURE")
        return cls(
            host=host,
            port=port,
            user=user,
            password=password,
            from_address=from_address,
            secure=(secure_raw or "").strip().lower() == "true",
            reply_to=env.get("SMTP_REPLY_TO") or None,
            bcc=env.get("SMTP_BCC") or None,
        )


def resolve_smtp_configs(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Optional[SmtpConfig]]:
    return {category: SmtpConfig.resolve(category, environ) for category in SMTP_CATEGORIES}


def validate_env(environ: Optional[Mapping[str, str]] = None) -> List[str]:
    env = os.environ if environ is None else environ
    errors = []
    for key, purpose in DEPLOY_CHECKS.items():
        if not str(env.get(key, "")).strip():
            errors.append(f"{key} is missing ({purpose})")
    return errors
