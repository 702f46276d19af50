"""
auth/gating.py -- Redirect rules for page (non-API) routes.

decide_redirect() is a pure function over (path, role-or-None) so the rules
can be tested without a request. api/main.py runs it from an HTTP middleware
on every non-/api request, using the role claim of the access token.

Rules:
  - /dashboard, /profile and the admin base path require a session;
    anonymous visitors go to /login?error=...&from=<path>.
  - The admin base path additionally requires ADMIN or SUPER_ADMIN;
    others go to /dashboard?error=....
  - /login and /register bounce signed-in users to their home page
    (admin base path for admins, /dashboard for everyone else).

The login routes run the "from" value through safe_next() before handing
it back as the post-login redirect target.

Layer rule: no imports from api/ or admin/.
"""

from __future__ import annotations

from urllib.parse import urlencode

from auth.models import ADMIN_ROLES, Role

LOGIN_REQUIRED_MESSAGE = "Please log in to continue"
FORBIDDEN_MESSAGE = "You do not have permission to access this page"

_PROTECTED_PREFIXES = ("/dashboard", "/profile")
_AUTH_PAGES = ("/login", "/register")


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def is_admin_route(path: str, admin_base_path: str) -> bool:
    return _matches(path, admin_base_path)


def is_protected_route(path: str, admin_base_path: str) -> bool:
    return is_admin_route(path, admin_base_path) or any(_matches(path, p) for p in _PROTECTED_PREFIXES)


def _role_or_none(role: str | None) -> Role | None:
    try:
        return Role(role) if role else None
    except ValueError:
        return None


def home_path(role: Role, admin_base_path: str = "/admin") -> str:
    """Landing page after sign-in: the admin console for admins, else /dashboard."""
    return admin_base_path if role in ADMIN_ROLES else "/dashboard"


def decide_redirect(path: str, role: str | None, admin_base_path: str = "/admin") -> str | None:
    """Return the redirect target for a page request, or None to let it through.

    role is the role claim of a valid access token, or None when the request
    carries no valid session.
    """
    if path.startswith("/api/") or path == "/api":
        return None

    user_role = _role_or_none(role)

    if is_protected_route(path, admin_base_path):
        if user_role is None:
            return "/login?" + urlencode({"error": LOGIN_REQUIRED_MESSAGE, "from": path})
        if is_admin_route(path, admin_base_path) and user_role not in ADMIN_ROLES:
            return "/dashboard?" + urlencode({"error": FORBIDDEN_MESSAGE})

    if path in _AUTH_PAGES and user_role is not None:
        return home_path(user_role, admin_base_path)

    return None


def safe_next(next_url: str | None, default: str = "/dashboard") -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative "//host" targets, which would
    send the user off-site after login.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//") and "\\" not in next_url:
        return next_url
    return default
