import hashlib
import hmac
from typing import Dict, Optional

SIGNATURE_HEADER = "X-Signature"

def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    return hmac.compare_digest(sign_payload(body, secret), signature)

def signature_headers(body: bytes, secret: Optional[str]) -> Dict[str, str]:
    if not secret:
        return {}
    return {SIGNATURE_HEADER: sign_payload(body, secret)}
