import hashlib
import hmac
from collections.abc import Iterable, Mapping
from urllib.parse import quote

# Characters JavaScript's encodeURIComponent leaves untouched.
_FORM_SAFE_CHARS = "-_.!~*'()"


def encode_form_value(value: str) -> str:
    """URL-encode a form value with spaces as '+'."""
    return quote(value, safe=_FORM_SAFE_CHARS).replace("%20", "+")


def form_signature(
    fields: Mapping[str, object] | Iterable[tuple[str, object]],
    passphrase: str | None = None,
) -> str:
    """MD5 signature of a redirect-form request or notification.

    Empty fields and the ``signature`` field are skipped, the rest sorted by
    key and joined as ``k=v`` pairs. Used for both signing and verifying.
    """
    items = fields.items() if isinstance(fields, Mapping) else fields
    pairs = sorted(
        ((key, str(value)) for key, value in items if key != "signature" and value not in (None, "")),
        key=lambda pair: pair[0],
    )
    message = "&".join(f"{key}={encode_form_value(value)}" for key, value in pairs)
    if passphrase:
        message = f"{message}&passphrase={encode_form_value(passphrase)}"
    return hashlib.md5(message.encode("utf-8")).hexdigest()


def hmac_hex(secret: str | bytes, message: bytes, digestmod=hashlib.sha256) -> str:
    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    return hmac.new(key, message, digestmod).hexdigest()


def signatures_match(expected: str, received: str | None) -> bool:
    """Case-insensitive constant-time comparison of hex signatures."""
    if not received:
        return False
    return hmac.compare_digest(
        expected.strip().lower().encode("utf-8"),
        received.strip().lower().encode("utf-8"),
    )


def payload_fingerprint(payload: bytes) -> str:
    """SHA-256 of a raw body, safe to log in place of the body itself."""
    return hashlib.sha256(payload).hexdigest()
