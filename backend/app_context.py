"""Process-wide hooks the ledger routes and repository resolve at call time."""
from __future__ import annotations

from typing import Any, Callable, Optional


def _has_admin_role(user: Any) -> bool:
    return getattr(user, "role", None) == "admin"


_connection_factory: Optional[Callable[[], Any]] = None
_user_resolver: Optional[Callable[..., Any]] = None
_admin_check: Callable[[Any], bool] = _has_admin_role


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_user: Callable[..., Any],
    is_admin: Optional[Callable[[Any], bool]] = None,
) -> None:
    """Install the database connection factory and session user resolution.

    ``is_admin`` defaults to comparing the user's ``role`` with ``"admin"``.
    """

    global _connection_factory
    global _user_resolver
    global _admin_check

    _connection_factory = get_conn
    _user_resolver = get_current_user
    _admin_check = is_admin or _has_admin_role


def _configured(hook: Optional[Any], name: str) -> Any:
    if hook is None:
        raise RuntimeError(f"app_context.configure() has not provided {name}")
    return hook


def get_conn() -> Any:
    return _configured(_connection_factory, "get_conn")()


def get_current_user(*args: Any, **kwargs: Any) -> Any:
    return _configured(_user_resolver, "get_current_user")(*args, **kwargs)


def is_admin(user: Any) -> bool:
    return bool(_admin_check(user))
