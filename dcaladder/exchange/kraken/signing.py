import base64
import hashlib
import hmac
import time
from urllib.parse import urlencode


def build_postdata(params: dict) -> str:
    return urlencode(params, doseq=True)


def new_nonce() -> str:
    # strictly increasing per key; microseconds keep it ahead of ms-based clients
    return str(int(time.time() * 1_000_000))


def sign(secret: str, uri_path: str, nonce: str, postdata: str) -> str:
    """
    Kraken API-Sign:
      base64(HMAC-SHA512(base64decode(secret), uri_path + SHA256(nonce + postdata)))
    """
    sha = hashlib.sha256((nonce + postdata).encode("utf-8")).digest()
    mac = hmac.new(
        base64.b64decode(secret),
        uri_path.encode("utf-8") + sha,
        hashlib.sha512,
    )
    return base64.b64encode(mac.digest()).decode("utf-8")
