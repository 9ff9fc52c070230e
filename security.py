"""Security functions: password hashing, credential issuing and resolution.

bcrypt via passlib stores passwords, PyJWT signs and verifies credentials.
The bearer filter chain is written as explicit stages: each one receives the
request headers and the context built so far, and returns either the context
(continue) or a ServiceError (stop).
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union
from passlib.context import CryptContext
import jwt
from config import Settings
from errors import Expired, Forbidden, ServiceError, Unauthenticated
from logging_config import get_logger
from models import Principal, utcnow

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
logger = get_logger(__name__)

HEADER_AUTHORIZATION = "authorization"
TOKEN_BEARER_PREFIX = "Bearer "
# Same message for bad signature, tampering, replay and malformed input.
INVALID_CREDENTIAL = "Invalid credential"


# hash_password: bcrypt hash of a plain-text password.
def hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    password_bytes = password.encode('utf-8')[:72]
    return pwd_context.hash(password_bytes.decode('utf-8', errors='ignore'))


# verify_password: Checks a supplied password against its stored hash.
def verify_password(password: str, password_hash: str) -> bool:
    password_bytes = password.encode('utf-8')[:72]
    return pwd_context.verify(password_bytes.decode('utf-8', errors='ignore'), password_hash)


def _epoch(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


# create_token: Signed credential carrying subject and roles, expiring after
# the configured number of minutes.
def create_token(sub: str, roles: Iterable[str], settings: Settings, now: Optional[datetime] = None) -> str:
    issued = now or utcnow()
    payload = {
        "sub": sub,
        "authorities": sorted(roles),
        "iat": _epoch(issued),
        "exp": _epoch(issued + timedelta(minutes=settings.jwt_exp_minutes)),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def resolve(credential: str, settings: Settings, now: Optional[datetime] = None) -> Principal:
    """Turn a credential into a Principal.

    Raises Unauthenticated when the signature or structure is wrong and Expired
    once ``now`` reaches the ``exp`` claim. Signature comparison inside PyJWT
    uses ``hmac.compare_digest``.
    """
    if not credential:
        raise Unauthenticated(INVALID_CREDENTIAL)
    try:
        claims = jwt.decode(
            credential,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": False, "verify_iat": False, "require": ["sub", "exp"]},
        )
    except jwt.PyJWTError:
        raise Unauthenticated(INVALID_CREDENTIAL)

    subject = claims.get("sub")
    exp = claims.get("exp")
    if not isinstance(subject, str) or not subject or not isinstance(exp, (int, float)):
        raise Unauthenticated(INVALID_CREDENTIAL)
    if _epoch(now or utcnow()) >= exp:
        raise Expired("Credential has expired")

    authorities = claims.get("authorities") or []
    if not isinstance(authorities, list):
        raise Unauthenticated(INVALID_CREDENTIAL)
    return Principal(subject=subject, roles=frozenset(str(a) for a in authorities))


# ------------------------- Filter chain ---------------------------

StageResult = Union[Dict[str, Any], ServiceError]
Stage = Callable[[Mapping[str, str], Dict[str, Any]], StageResult]


def extract_bearer(headers: Mapping[str, str], context: Dict[str, Any]) -> StageResult:
    """Pull the raw credential out of the Authorization header."""
    header = None
    for key, value in headers.items():
        if key.lower() == HEADER_AUTHORIZATION:
            header = value
            break
    if not header or not header.startswith(TOKEN_BEARER_PREFIX):
        logger.info("Bearer credential missing or malformed")
        return Unauthenticated(INVALID_CREDENTIAL)
    context["credential"] = header[len(TOKEN_BEARER_PREFIX):].strip()
    return context


def resolve_principal(settings: Settings, clock: Callable[[], datetime] = utcnow) -> Stage:
    def stage(headers: Mapping[str, str], context: Dict[str, Any]) -> StageResult:
        try:
            context["principal"] = resolve(context.get("credential", ""), settings, now=clock())
        except ServiceError as exc:
            logger.info("Credential rejected", reason=exc.code)
            return exc
        return context
    return stage


def require_role(role: str) -> Stage:
    def stage(headers: Mapping[str, str], context: Dict[str, Any]) -> StageResult:
        principal = context.get("principal")
        if principal is None or not principal.has_role(role):
            return Forbidden(f"Role '{role}' required")
        return context
    return stage


def run_chain(stages: Iterable[Stage], headers: Mapping[str, str]) -> Dict[str, Any]:
    """Apply stages in order; the first failure is raised and stops the chain."""
    context: Dict[str, Any] = {}
    for stage in stages:
        result = stage(headers, context)
        if isinstance(result, ServiceError):
            raise result
        context = result
    return context


def authenticate(headers: Mapping[str, str], settings: Settings,
                 clock: Callable[[], datetime] = utcnow, role: Optional[str] = None) -> Principal:
    stages = [extract_bearer, resolve_principal(settings, clock)]
    if role:
        stages.append(require_role(role))
    return run_chain(stages, headers)["principal"]
