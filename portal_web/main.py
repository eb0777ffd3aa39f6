"""
Westmarch portal web app: Discord login.
GET /, /login, /auth/callback, /auth/reset, /logout, /me. Port 8000.
Each browser gets an opaque portal_scope cookie; credentials are stored under that scope.
"""
import asyncio
import html
import secrets
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from portal_web.callback import STATUS_SUCCESS, CallbackHandler, CallbackOutcome
from portal_web.config import SCOPE_COOKIE_MAX_AGE, SCOPE_COOKIE_NAME
from portal_web.database import init_db
from portal_web.discord_auth import find_auth_service, get_auth_service
from portal_web.session import LoginSession, get_login_session


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup."""
    init_db()
    yield


app = FastAPI(title="Westmarch Portal", version="0.5.0", lifespan=lifespan)


def _scope(request: Request) -> tuple[str, bool]:
    """(scope id, is_new). A new id is issued when the browser has none."""
    scope = request.cookies.get(SCOPE_COOKIE_NAME)
    if scope:
        return scope, False
    return secrets.token_urlsafe(24), True


def _remember_scope(response: Response, scope: str, is_new: bool) -> Response:
    if is_new:
        response.set_cookie(
            SCOPE_COOKIE_NAME,
            scope,
            max_age=SCOPE_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
        )
    return response


def _page(title: str, body: str, status_code: int = 200, head: str = "") -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title>{head}</head>
<body>
{body}
</body>
</html>""",
        status_code=status_code,
    )


async def _existing_session(request: Request) -> LoginSession | None:
    """Login session for a browser that already has a scope with state; never allocates one."""
    service = await find_auth_service(request.cookies.get(SCOPE_COOKIE_NAME))
    if service is None:
        return None
    return get_login_session(service)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "portal_web"}


@app.get("/", response_class=HTMLResponse)
async def home(request: Request):
    """Home page: signed-in user (restored from a valid token) or a login link."""
    scope, is_new = _scope(request)
    session = await _existing_session(request)
    user = await session.restore() if session is not None else None
    if user is None:
        body = """  <h1>Westmarch</h1>
  <p><a href="/login">Login with Discord</a></p>"""
    else:
        body = f"""  <h1>Westmarch</h1>
  <p><img src="{html.escape(user.avatar)}" alt="" width="64" height="64"></p>
  <p>Welcome, {html.escape(user.username)}!</p>
  <p><a href="/me">My account</a> | <a href="/logout">Log out</a></p>"""
    return _remember_scope(_page("Westmarch", body), scope, is_new)


@app.get("/login")
def login(request: Request):
    """Store a fresh verifier + state for this browser and redirect to Discord."""
    scope, is_new = _scope(request)
    url = get_login_session(get_auth_service(scope)).begin_login()
    return _remember_scope(RedirectResponse(url=url, status_code=302), scope, is_new)


def _render_callback(outcome: CallbackOutcome) -> HTMLResponse:
    if outcome.status == STATUS_SUCCESS:
        refresh = f'<meta http-equiv="refresh" content="{outcome.redirect_after};url={html.escape(outcome.redirect_to)}">'
        return _page(
            "Welcome, Adventurer!",
            """  <h1>Welcome, Adventurer!</h1>
  <p>Successfully authenticated with Discord and set up your profile.</p>
  <p>Redirecting you to the homepage...</p>""",
            head=refresh,
        )
    hint = ""
    if outcome.needs_restart_hint:
        hint = (
            "\n  <p>This can happen if you refreshed the page during login, took too long to complete "
            "the process, or there was a security validation issue.</p>"
        )
    return _page(
        "Authentication Failed",
        f"""  <h1>Authentication Failed</h1>
  <p>{html.escape(outcome.error_message)}</p>{hint}
  <p><a href="/">Return to Homepage</a></p>
  <p><a href="/auth/reset">Try Logging In Again</a></p>""",
        status_code=400,
    )


@app.get("/auth/callback", response_class=HTMLResponse)
async def auth_callback(request: Request):
    """Discord redirects here with ?code=...&state=... or ?error=..."""
    scope, is_new = _scope(request)
    service = get_auth_service(scope)
    session = get_login_session(service)
    handler = CallbackHandler(service, session.login)
    outcome = await handler.handle(request.query_params)
    return _remember_scope(_render_callback(outcome), scope, is_new)


@app.get("/auth/reset")
def auth_reset(request: Request):
    """Clear everything stored for this browser and start a new login."""
    scope, is_new = _scope(request)
    get_login_session(get_auth_service(scope)).logout()
    return _remember_scope(RedirectResponse(url="/login", status_code=302), scope, is_new)


@app.get("/logout")
def logout(request: Request):
    scope, is_new = _scope(request)
    get_login_session(get_auth_service(scope)).logout()
    return _remember_scope(RedirectResponse(url="/", status_code=302), scope, is_new)


@app.get("/me")
async def me(request: Request):
    """Current portal user and profile as JSON; 401 when not logged in."""
    session = await _existing_session(request)
    user = await session.restore() if session is not None else None
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"error": "not_authenticated", "error_description": "Log in with Discord first"},
        )
    await asyncio.to_thread(session.refresh_profile)
    return {"user": asdict(user)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "portal_web.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
