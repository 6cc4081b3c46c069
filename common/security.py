import hashlib
import hmac
import time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"

def mint_internal_jwt(aud: str, claims: Optional[Dict] = None, ttl_seconds: Optional[int] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": aud,
        "iat": now,
        "exp": now + (ttl_seconds if ttl_seconds is not None else settings.internal_jwt_ttl_seconds),
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

def sign_webhook_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body or b"", hashlib.sha256).hexdigest()

def verify_webhook_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of an X-Signature header against the raw request body."""
    if not secret:
        return True
    signature = (signature or "").strip().lower()
    if signature.startswith("sha256="):
        signature = signature.split("=", 1)[1]
    if not signature:
        return False
    return hmac.compare_digest(sign_webhook_body(secret, body), signature)
