"""
Liveness and readiness probes.

Ready means the token database and the Redis state store answer, and the IdP
client settings are complete enough to drive the configured login flow.
"""

from fastapi import APIRouter, Response, status

from oidcauth.auth.oidc_client import require_endpoints
from oidcauth.config import LoginFlowConfig, settings
from oidcauth.db.session import get_db_health
from oidcauth.exceptions import ConfigurationError
from oidcauth.logging_config import get_logger
from oidcauth.redis.client import get_redis_health

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


def _oidc_configured(config: LoginFlowConfig) -> bool:
    if config.login_flow == "rocreds":
        return bool(config.client_id and config.token_endpoint)
    try:
        require_endpoints(config)
    except ConfigurationError:
        return False
    return True


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(response: Response) -> dict[str, str | dict[str, str]]:
    checks = {
        "database": "healthy" if await get_db_health() else "unhealthy",
        "redis": "healthy" if await get_redis_health() else "unhealthy",
        "oidc": "healthy" if _oidc_configured(settings.oidc) else "unconfigured",
    }

    if any(v != "healthy" for v in checks.values()):
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not ready", "checks": checks}

    return {"status": "ready", "checks": checks}
