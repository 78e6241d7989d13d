"""
Caller identity.

The identity provider hands us a signed token in the request headers. It is
turned into a strict ``Verified`` / ``Unverified`` result here, and the
resolution strategies below map a verified identity onto a stored account,
recovering records whose provider-side user id has changed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from jose import JWTError, jwt

from .models import Account, IdentityProfile
from .storage import Storage


@dataclass(frozen=True)
class Verified:
    user_id: str
    profile: IdentityProfile


@dataclass(frozen=True)
class Unverified:
    reason: str


IdentityResult = Union[Verified, Unverified]


class TokenIdentityVerifier:
    def __init__(self, secret_key: str, algorithm: str = "HS256", header_name: str = "x-user-token"):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.header_name = header_name.lower()

    def extract_token(self, headers: Mapping[str, str]) -> Optional[str]:
        token = headers.get(self.header_name)
        if token:
            return token.strip()
        auth = headers.get("authorization", "")
        if auth.lower().startswith("bearer "):
            return auth[7:].strip() or None
        return None

    def verify(self, headers: Mapping[str, str]) -> IdentityResult:
        token = self.extract_token(headers)
        if not token:
            return Unverified("No identity token supplied")
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            return Unverified(f"Invalid identity token: {e}")

        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            return Unverified("Identity token has no subject")
        return Verified(user_id=user_id, profile=profile_from_claims(claims))


def profile_from_claims(claims: Mapping[str, Any]) -> IdentityProfile:
    roles = claims.get("roles") or []
    if not isinstance(roles, list):
        roles = []
    return IdentityProfile(
        username=str(claims.get("username") or ""),
        name=str(claims.get("name") or claims.get("full_name") or ""),
        avatar_url=str(claims.get("avatar_url") or ""),
        roles=[str(r) for r in roles],
    )


def issue_token(
    user_id: str,
    secret_key: str,
    algorithm: str = "HS256",
    expires_delta: Optional[timedelta] = None,
    **claims: Any,
) -> str:
    """Sign an identity token the way the provider does (local dev and tests)."""
    to_encode = dict(claims, sub=user_id)
    if expires_delta is not None:
        to_encode["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


# ============================================================
# Account resolution
# ============================================================
ResolutionStrategy = Callable[[Storage, str, str, IdentityProfile], Optional[Account]]


def match_by_user_id(storage: Storage, user_id: str, company_id: str, profile: IdentityProfile) -> Optional[Account]:
    return storage.get_account(user_id, company_id)


def match_by_username_in_company(
    storage: Storage, user_id: str, company_id: str, profile: IdentityProfile
) -> Optional[Account]:
    if not profile.username:
        return None
    matches = storage.find_accounts_by_username(profile.username, company_id)
    return matches[0] if matches else None


def match_by_unique_username(
    storage: Storage, user_id: str, company_id: str, profile: IdentityProfile
) -> Optional[Account]:
    if not profile.username:
        return None
    matches = storage.find_accounts_by_username(profile.username)
    return matches[0] if len(matches) == 1 else None


def match_by_first_username(
    storage: Storage, user_id: str, company_id: str, profile: IdentityProfile
) -> Optional[Account]:
    if not profile.username:
        return None
    matches = storage.find_accounts_by_username(profile.username)
    return matches[0] if matches else None


DEFAULT_STRATEGIES: tuple[ResolutionStrategy, ...] = (
    match_by_user_id,
    match_by_username_in_company,
    match_by_unique_username,
    match_by_first_username,
)


def resolve_account(
    storage: Storage,
    user_id: str,
    company_id: str,
    profile: IdentityProfile,
    strategies: Sequence[ResolutionStrategy] = DEFAULT_STRATEGIES,
) -> Optional[Account]:
    for strategy in strategies:
        account = strategy(storage, user_id, company_id, profile)
        if account is not None:
            return account
    return None
