from passlib.context import CryptContext
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
from app.core.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRES_MINUTES
import hashlib
import hmac
import ipaddress
import re

pwd_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

def hash_password(p: str) -> str:
    return pwd_ctx.hash(p)

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_ctx.verify(plain, hashed)

def create_jwt_token(data: dict, expires_minutes: int = JWT_EXPIRES_MINUTES) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_jwt_token(token: str) -> dict:
    """
    Decode and validate JWT token.
    Raises JWTError if token is invalid or expired.
    """
    try:
        # jose.jwt.decode automatically validates expiration when present
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload
    except JWTError:
        raise

def validate_password_strength(password: str) -> tuple[bool, str]:
    """
    Validate password meets strength requirements.
    Returns (is_valid, error_message)

    Requirements:
    - At least 8 characters
    - At least 1 uppercase letter
    - At least 1 lowercase letter
    - At least 1 number
    """
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if not re.search(r"[A-Z]", password):
        return False, "Password must contain at least one uppercase letter"

    if not re.search(r"[a-z]", password):
        return False, "Password must contain at least one lowercase letter"

    if not re.search(r"[0-9]", password):
        return False, "Password must contain at least one number"

    return True, ""

def split_authme_hash(stored: str) -> tuple[str, str, str] | None:
    """
    Split an AuthMe hash of the form $ALGO$salt$hash.
    Returns (ALGO, salt, hash) or None when the value is not in that format.
    """
    if not stored or not stored.startswith("$"):
        return None
    parts = stored.split("$")
    if len(parts) < 4:
        return None
    _, algorithm, salt, digest = parts[:4]
    if not algorithm or not salt or not digest:
        return None
    return algorithm.upper(), salt, digest

def verify_authme_sha_password(stored: str, plain: str) -> bool:
    # AuthMe SHA256: sha256(sha256(plain).hex + salt).hex
    segments = split_authme_hash(stored)
    if not segments or segments[0] != "SHA":
        return False
    _, salt, digest = segments
    stage1 = hashlib.sha256(plain.encode("utf-8")).hexdigest()
    stage2 = hashlib.sha256((stage1 + salt).encode("utf-8")).hexdigest()
    return hmac.compare_digest(stage2, digest)

def normalize_ip(raw: str | None) -> str | None:
    """First hop of a forwarded list, or None if it is not an IP address."""
    if not raw:
        return None
    first = raw.split(",")[0].strip()
    if first.startswith("::ffff:"):
        first = first[len("::ffff:"):]
    try:
        return str(ipaddress.ip_address(first))
    except ValueError:
        return None
