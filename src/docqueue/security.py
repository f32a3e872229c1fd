"""Caller authentication: bearer tokens for users, a shared secret for cron."""

import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from fastapi import Request

from docqueue.errors import AuthenticationError
from docqueue.states import Plan, Tier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Who is calling and which plan they are on."""

    owner_id: str
    plan: Plan = Plan.FREE

    @property
    def tier(self) -> Tier:
        return self.plan.tier


class Authenticator(ABC):
    """Resolves a bearer credential to a caller identity."""

    @abstractmethod
    def authenticate(self, token: str) -> CallerIdentity:
        """
        Raises:
            AuthenticationError: If the token is not recognised
        """
        ...


class StaticTokenAuthenticator(Authenticator):
    """
    Authenticator over a fixed token table.

    Each table value is "owner_id:plan"; the plan part is optional and
    defaults to free.
    """

    def __init__(self, tokens: dict[str, str]) -> None:
        self._identities: dict[str, CallerIdentity] = {}
        for token, entry in tokens.items():
            owner_id, _, plan = entry.partition(":")
            if not owner_id:
                raise ValueError("Token table entries need an owner id")
            self._identities[token] = CallerIdentity(owner_id=owner_id, plan=Plan(plan or Plan.FREE.value))

    def authenticate(self, token: str) -> CallerIdentity:
        for known, identity in self._identities.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                return identity
        raise AuthenticationError("Invalid authentication")


def get_bearer_token(request: Request) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer ") or not auth_header[7:].strip():
        raise AuthenticationError("Missing or invalid authorization header")
    return auth_header[7:].strip()


def verify_cron_secret(request: Request, secret: str | None) -> None:
    """
    Guard for internal trigger endpoints.

    Accepts the secret as a bearer token or in ``X-Cron-Secret``. With no
    secret configured the endpoints are closed.
    """
    if not secret:
        raise AuthenticationError("Internal endpoints are disabled")

    provided = request.headers.get("X-Cron-Secret")
    if provided is None:
        auth_header = request.headers.get("Authorization", "")
        provided = auth_header[7:] if auth_header.startswith("Bearer ") else ""

    if not hmac.compare_digest(provided.encode(), secret.encode()):
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"Rejected internal trigger from {client_host}")
        raise AuthenticationError("Unauthorized")
