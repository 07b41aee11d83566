"""Request dependencies: admin authentication and engine lookup."""

import secrets

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.config import settings
from src.domains.threats.cluster_engine import ThreatClusterEngine
from src.domains.threats.replay import ThreatReplayService
from src.domains.threats.repository import ThreatRepository

_bearer = HTTPBearer(auto_error=False)


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),  # noqa: B008
) -> None:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Admin token required")
    if not secrets.compare_digest(credentials.credentials, settings.admin_token):
        raise HTTPException(status_code=403, detail="Invalid admin token")


def get_repository(request: Request) -> ThreatRepository:
    return request.app.state.threat_repository


def get_cluster_engine(request: Request) -> ThreatClusterEngine:
    return request.app.state.cluster_engine


def get_replay_service(request: Request) -> ThreatReplayService:
    return request.app.state.replay_service
