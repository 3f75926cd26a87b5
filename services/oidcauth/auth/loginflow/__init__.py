"""Login flow registry.

Maps flow identifiers to their classes. The registry is checked once at
startup; unknown flow names come back from create_login_flow as a
ConfigurationError value instead of being raised.
"""

from inspect import isabstract

from oidcauth.auth.loginflow.authcode import AuthorizationCodeFlow
from oidcauth.auth.loginflow.base import FlowContext, LoginFlow
from oidcauth.auth.loginflow.rocreds import ResourceOwnerPasswordFlow
from oidcauth.config import LoginFlowConfig
from oidcauth.exceptions import ConfigurationError
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)

LOGIN_FLOWS: dict[str, type[LoginFlow]] = {
    AuthorizationCodeFlow.flow_id: AuthorizationCodeFlow,
    ResourceOwnerPasswordFlow.flow_id: ResourceOwnerPasswordFlow,
}


def validate_registry(configured_flow: str | None = None) -> None:
    """Check registry consistency and, optionally, the configured flow name.

    Called during application startup. Raises ConfigurationError.
    """
    for flow_id, flow_cls in LOGIN_FLOWS.items():
        if not issubclass(flow_cls, LoginFlow) or isabstract(flow_cls):
            raise ConfigurationError(f"Login flow {flow_id!r} is not a concrete LoginFlow")
        if flow_cls.flow_id != flow_id:
            raise ConfigurationError(
                f"Login flow registered as {flow_id!r} declares {flow_cls.flow_id!r}"
            )
    if configured_flow is not None and configured_flow not in LOGIN_FLOWS:
        raise ConfigurationError(f"Unknown login flow {configured_flow!r}")
    logger.info("Login flows registered", flows=sorted(LOGIN_FLOWS))


def create_login_flow(
    config: LoginFlowConfig,
    context: FlowContext,
    flow_id: str | None = None,
) -> LoginFlow | ConfigurationError:
    """Build the flow named by ``flow_id`` (default: the configured one)."""
    name = flow_id or config.login_flow
    flow_cls = LOGIN_FLOWS.get(name)
    if flow_cls is None:
        logger.error("Unknown login flow requested", flow=name)
        return ConfigurationError(f"Unknown login flow {name!r}")
    return flow_cls(config, context)


__all__ = [
    "LOGIN_FLOWS",
    "AuthorizationCodeFlow",
    "FlowContext",
    "LoginFlow",
    "ResourceOwnerPasswordFlow",
    "create_login_flow",
    "validate_registry",
]
