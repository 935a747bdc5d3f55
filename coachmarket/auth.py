import base64
import json
import logging
import time
from typing import Optional

import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import CLERK_API_URL, CLERK_ISSUER, CLERK_JWKS_URL, CLERK_SECRET_KEY
from .database import get_db
from .models import Capability, SystemRole, User
from .shared.responses import ApiError
from .shared.validators import validate_email

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Allowed clock skew for exp / nbf / iat checks
CLOCK_SKEW_SECONDS = 60

# Cache for Clerk's JSON Web Key Set, keyed by kid
_cached_keys: Optional[dict[str, dict]] = None


def _b64url_decode(segment: str) -> bytes:
    padding_needed = 4 - len(segment) % 4
    if padding_needed != 4:
        segment += "=" * padding_needed
    return base64.urlsafe_b64decode(segment)


def _jwks_url() -> Optional[str]:
    if CLERK_JWKS_URL:
        return CLERK_JWKS_URL
    if CLERK_ISSUER:
        return f"{CLERK_ISSUER.rstrip('/')}/.well-known/jwks.json"
    return None


async def get_clerk_jwks() -> Optional[dict[str, dict]]:
    """Fetch Clerk's public signing keys"""
    global _cached_keys
    if _cached_keys:
        return _cached_keys

    url = _jwks_url()
    if not url:
        logger.error("❌ CLERK_JWKS_URL / CLERK_ISSUER not configured")
        return None

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(url)
        if response.status_code != 200:
            logger.error(f"❌ Failed to fetch Clerk JWKS: HTTP {response.status_code}")
            return None
        keys = response.json().get("keys", [])
        _cached_keys = {key["kid"]: key for key in keys if key.get("kid")}
        logger.info(f"✅ Fetched {len(_cached_keys)} Clerk signing keys")
        return _cached_keys
    except httpx.HTTPError as e:
        logger.error(f"❌ Error fetching Clerk JWKS: {str(e)}")
    return None


def _public_key_from_jwk(jwk: dict):
    n = int.from_bytes(_b64url_decode(jwk["n"]), "big")
    e = int.from_bytes(_b64url_decode(jwk["e"]), "big")
    return RSAPublicNumbers(e, n).public_key()


async def verify_clerk_token(token: str) -> dict:
    """
    Verify a Clerk session JWT with full RS256 signature verification.
    Returns the decoded claims.
    """
    global _cached_keys

    parts = token.split(".")
    if len(parts) != 3:
        raise HTTPException(status_code=401, detail="Invalid token format")

    header_b64, payload_b64, signature_b64 = parts

    try:
        header = json.loads(_b64url_decode(header_b64))
    except (ValueError, TypeError) as e:
        logger.error(f"❌ Failed to decode token header: {str(e)}")
        raise HTTPException(status_code=401, detail="Invalid token header") from e

    kid = header.get("kid")
    if header.get("alg") != "RS256":
        logger.error(f"❌ Invalid token algorithm: {header.get('alg')}")
        raise HTTPException(status_code=401, detail="Invalid token algorithm")
    if not kid:
        raise HTTPException(status_code=401, detail="Token missing key ID")

    keys = await get_clerk_jwks()
    if not keys or kid not in keys:
        logger.warning(f"⚠️ Key ID {kid} not found in JWKS, invalidating cache and retrying")
        _cached_keys = None
        keys = await get_clerk_jwks()
        if not keys or kid not in keys:
            raise HTTPException(status_code=401, detail="Unable to verify token signature")

    try:
        public_key = _public_key_from_jwk(keys[kid])
        signature = _b64url_decode(signature_b64)
        public_key.verify(
            signature, f"{header_b64}.{payload_b64}".encode(), padding.PKCS1v15(), hashes.SHA256()
        )
    except Exception as e:
        logger.error(f"❌ Token signature verification failed: {str(e)}")
        raise HTTPException(status_code=401, detail="Invalid token signature") from e

    try:
        claims = json.loads(_b64url_decode(payload_b64))
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=401, detail="Invalid token payload") from e

    now = time.time()
    if claims.get("exp", 0) < now - CLOCK_SKEW_SECONDS:
        raise HTTPException(
            status_code=401,
            detail="Token has expired. Please refresh your session.",
            headers={"X-Token-Expired": "true"},
        )
    if claims.get("nbf", 0) > now + CLOCK_SKEW_SECONDS:
        raise HTTPException(status_code=401, detail="Token not yet valid")
    if CLERK_ISSUER and claims.get("iss") != CLERK_ISSUER:
        logger.error("❌ Token issuer mismatch")
        raise HTTPException(status_code=401, detail="Invalid token issuer")
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token claims")

    return claims


async def fetch_clerk_user(clerk_user_id: str) -> dict:
    """Load a user profile from Clerk's backend API"""
    if not CLERK_SECRET_KEY:
        return {}
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(
            f"{CLERK_API_URL}/users/{clerk_user_id}",
            headers={"Authorization": f"Bearer {CLERK_SECRET_KEY}"},
        )
    if response.status_code != 200:
        logger.warning(f"⚠️ Clerk user lookup failed: HTTP {response.status_code}")
        return {}

    data = response.json()
    primary_id = data.get("primary_email_address_id")
    email = None
    for address in data.get("email_addresses", []):
        if address.get("id") == primary_id or email is None:
            email = address.get("email_address")
    return {
        "email": email,
        "first_name": data.get("first_name"),
        "last_name": data.get("last_name"),
        "image_url": data.get("image_url"),
    }


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current user from a Clerk session token, creating it on first sight"""
    claims = await verify_clerk_token(credentials.credentials)
    clerk_user_id = claims["sub"]

    user = db.query(User).filter(User.clerk_user_id == clerk_user_id).first()
    if user:
        return user

    profile = {
        "email": claims.get("email"),
        "first_name": claims.get("first_name"),
        "last_name": claims.get("last_name"),
        "image_url": None,
    }
    if not profile["email"]:
        profile = await fetch_clerk_user(clerk_user_id)
    try:
        email = validate_email(profile.get("email"))
    except ValueError:
        email = None
    if not email:
        logger.error(f"❌ No valid email available for Clerk user {clerk_user_id}")
        raise HTTPException(status_code=401, detail="Unable to resolve user email")

    logger.info(f"🆕 Creating new user: {email}")
    user = User(
        clerk_user_id=clerk_user_id,
        email=email,
        first_name=profile.get("first_name"),
        last_name=profile.get("last_name"),
        profile_image_url=profile.get("image_url"),
        system_role=SystemRole.USER,
        capabilities=[Capability.MENTEE],
        is_mentee=True,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error(f"❌ Email {email} is already registered to another account")
        raise HTTPException(
            status_code=409,
            detail="This email is already registered. Please sign in with your existing account.",
        ) from e
    db.refresh(user)
    return user


def require_system_role(*roles: str):
    """Dependency factory restricting a route to the given system roles"""

    async def checker(user: User = Depends(get_current_user)) -> User:
        if user.system_role not in roles:
            logger.warning(f"⚠️ User {user.email} ({user.system_role}) denied, needs {roles}")
            raise ApiError(403, "FORBIDDEN", "Insufficient permissions")
        return user

    return checker
