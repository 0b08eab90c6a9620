import base64
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.x509 import load_pem_x509_certificate
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import EXTERNAL_HTTP_TIMEOUT, FIREBASE_PROJECT_ID
from .database import get_db
from .models import Client, Psychologist, User

logger = logging.getLogger(__name__)

security = HTTPBearer()

GOOGLE_CERTS_URL = (
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
)

# Cache for Google's public keys
_cached_keys = None


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller, passed explicitly to every service call"""

    user_id: int
    role: str
    email: str
    client_id: Optional[int] = None
    psychologist_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ("admin", "superadmin")


def _b64decode(segment: str) -> bytes:
    padding_len = 4 - len(segment) % 4
    return base64.urlsafe_b64decode(segment + ("=" * padding_len if padding_len != 4 else ""))


async def get_google_public_keys(force_refresh: bool = False):
    """Fetch Google's public keys for Firebase token verification"""
    global _cached_keys
    if _cached_keys and not force_refresh:
        return _cached_keys

    try:
        async with httpx.AsyncClient(timeout=EXTERNAL_HTTP_TIMEOUT) as client:
            response = await client.get(GOOGLE_CERTS_URL)
            if response.status_code == 200:
                _cached_keys = response.json()
                logger.info(f"✅ Fetched {len(_cached_keys)} Google public keys")
                return _cached_keys
            logger.error(f"❌ Failed to fetch Google public keys: HTTP {response.status_code}")
    except Exception as e:
        logger.error(f"❌ Error fetching Google public keys: {str(e)}")
    return None


async def verify_firebase_token(token: str) -> dict:
    """
    Verify Firebase ID token with full cryptographic signature verification.
    Uses Google's public keys to verify the RS256 JWT signature, then checks claims.
    """
    if not FIREBASE_PROJECT_ID:
        logger.error("❌ FIREBASE_PROJECT_ID not configured")
        raise HTTPException(status_code=500, detail="Authentication not configured")

    parts = token.split(".")
    if len(parts) != 3:
        raise HTTPException(status_code=401, detail="Invalid token format")
    header_b64, payload_b64, signature_b64 = parts

    try:
        header = json.loads(_b64decode(header_b64))
    except Exception as e:
        logger.error(f"❌ Failed to decode token header: {str(e)}")
        raise HTTPException(status_code=401, detail="Invalid token header") from e

    kid = header.get("kid")
    if header.get("alg") != "RS256" or not kid:
        raise HTTPException(status_code=401, detail="Invalid token algorithm")

    public_keys = await get_google_public_keys()
    if not public_keys or kid not in public_keys:
        logger.warning(f"⚠️ Key ID {kid} not found in public keys, refreshing cache")
        public_keys = await get_google_public_keys(force_refresh=True)
        if not public_keys or kid not in public_keys:
            raise HTTPException(status_code=401, detail="Unable to verify token signature")

    try:
        cert = load_pem_x509_certificate(public_keys[kid].encode(), default_backend())
        cert.public_key().verify(
            _b64decode(signature_b64),
            f"{header_b64}.{payload_b64}".encode(),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except Exception as e:
        logger.error(f"❌ Token signature verification failed: {str(e)}")
        raise HTTPException(status_code=401, detail="Invalid token signature") from e

    claims = json.loads(_b64decode(payload_b64))

    if claims.get("aud") != FIREBASE_PROJECT_ID:
        raise HTTPException(status_code=401, detail="Invalid token audience")
    if claims.get("iss") != f"https://securetoken.google.com/{FIREBASE_PROJECT_ID}":
        raise HTTPException(status_code=401, detail="Invalid token issuer")
    if claims.get("exp", 0) < time.time():
        raise HTTPException(
            status_code=401,
            detail="Token has expired. Please refresh your session.",
            headers={"X-Token-Expired": "true"},
        )
    if claims.get("iat", 0) > time.time() + 60:  # Allow 60 seconds clock skew
        raise HTTPException(status_code=401, detail="Invalid token")

    return claims


def resolve_identity(db: Session, firebase_uid: str, email: Optional[str]) -> Optional[AuthContext]:
    """
    Resolve a verified token identity to an AuthContext.

    Precedence:
      1. User by Firebase UID
      2. User by email (the stored UID is re-linked to the new sign-in method)
    Then the role profile for that user:
      - client: Client by user_id, else Client by email (linked on first match)
      - psychologist: Psychologist by user_id

    Returns None when no user matches either key.
    """
    user = db.query(User).filter(User.firebase_uid == firebase_uid).first()

    if not user and email:
        user = db.query(User).filter(User.email == email).first()
        if user:
            logger.info(f"🔄 Re-linking user {email} to Firebase UID {firebase_uid}")
            user.firebase_uid = firebase_uid
            db.commit()

    if not user:
        return None

    client_id = None
    psychologist_id = None

    if user.role == "psychologist":
        psychologist = db.query(Psychologist).filter(Psychologist.user_id == user.id).first()
        psychologist_id = psychologist.id if psychologist else None
    elif user.role == "client":
        client = db.query(Client).filter(Client.user_id == user.id).first()
        if not client and user.email:
            client = (
                db.query(Client)
                .filter(Client.email == user.email, Client.user_id.is_(None))
                .first()
            )
            if client:
                client.user_id = user.id
                db.commit()
                logger.info(f"🔗 Linked client {client.id} to user {user.id}")
        client_id = client.id if client else None

    return AuthContext(
        user_id=user.id,
        role=user.role,
        email=user.email,
        client_id=client_id,
        psychologist_id=psychologist_id,
    )


def _register_client_user(db: Session, firebase_uid: str, email: str, name: str) -> None:
    """First sign-in: create the user and its client profile"""
    logger.info(f"🆕 Creating new client user: {email}")
    first_name, _, last_name = (name or email.split("@")[0]).partition(" ")
    user = User(firebase_uid=firebase_uid, email=email, full_name=name, role="client")
    db.add(user)
    try:
        db.flush()
        existing = db.query(Client).filter(Client.email == email, Client.user_id.is_(None)).first()
        if not existing:
            db.add(
                Client(user_id=user.id, first_name=first_name, last_name=last_name or None, email=email)
            )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error(f"❌ Email {email} was taken by another account (race condition)")
        raise HTTPException(
            status_code=409,
            detail="This email is already registered. Please sign in with your existing account.",
        ) from e


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> AuthContext:
    """Authenticate the bearer token and return the caller's context"""
    token = credentials.credentials
    if len(token.split(".")) != 3:
        raise HTTPException(
            status_code=401, detail="Invalid token format. Expected a valid JWT token."
        )

    claims = await verify_firebase_token(token)
    firebase_uid = claims.get("sub") or claims.get("user_id")
    email = claims.get("email")
    if not firebase_uid:
        raise HTTPException(status_code=401, detail="Invalid token claims")

    context = resolve_identity(db, firebase_uid, email)
    if context is None:
        if not email:
            raise HTTPException(status_code=401, detail="Token has no email claim")
        _register_client_user(db, firebase_uid, email, claims.get("name", ""))
        context = resolve_identity(db, firebase_uid, email)

    logger.debug(f"✅ Authenticated {context.email} as {context.role}")
    return context


async def require_client(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if context.client_id is None:
        raise HTTPException(status_code=403, detail="Client profile required")
    return context


async def require_admin(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not context.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return context


async def require_psychologist_or_admin(
    context: AuthContext = Depends(get_auth_context),
) -> AuthContext:
    if not context.is_admin and context.psychologist_id is None:
        raise HTTPException(status_code=403, detail="Psychologist or admin access required")
    return context
