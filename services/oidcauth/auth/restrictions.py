"""User restrictions.

Administrators list regular expressions, one per line. An identity may sign in
when its username matches at least one of them. No patterns means no
restriction.
"""

import re

from oidcauth.config import UserRestrictions
from oidcauth.exceptions import RestrictedUserError
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)


def is_allowed(username: str, restrictions: UserRestrictions) -> bool:
    """Whether ``username`` matches any configured pattern."""
    if not restrictions.patterns:
        return True

    flags = 0 if restrictions.case_sensitive else re.IGNORECASE
    for pattern in restrictions.patterns:
        try:
            if re.search(pattern, username, flags):
                return True
        except re.error as e:
            logger.warning("Ignoring invalid user restriction", pattern=pattern, error=str(e))
    return False


def enforce(username: str, restrictions: UserRestrictions) -> None:
    """Raise RestrictedUserError unless ``username`` is allowed."""
    if not is_allowed(username, restrictions):
        logger.info("Login rejected by user restrictions", username=username)
        raise RestrictedUserError(f"User {username!r} does not match any user restriction")
